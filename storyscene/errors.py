"""Domain errors raised by the subscription service.

Each error carries the HTTP status it maps to; ``main.py`` renders them as
the ``{"success": false, "error": ...}`` envelope.
"""


class SubscriptionError(Exception):
    """Base class for subscription and billing failures."""

    status_code: int = 400

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class AccountNotFoundError(SubscriptionError):
    status_code = 404


class PlanNotFoundError(SubscriptionError):
    status_code = 404


class PaymentMethodNotFoundError(SubscriptionError):
    status_code = 404


class InvalidPlanChangeError(SubscriptionError):
    status_code = 400


class NoActiveSubscriptionError(SubscriptionError):
    status_code = 400


class CreditLimitReachedError(SubscriptionError):
    """Raised when a credit consumption would exceed the cycle allotment."""

    status_code = 400

    def __init__(self, message: str, *, credits_used: int, credits_total: int) -> None:
        super().__init__(message)
        self.credits_used = credits_used
        self.credits_total = credits_total


class PaymentMethodError(SubscriptionError):
    status_code = 400


class ForbiddenError(SubscriptionError):
    status_code = 403


class ProviderError(SubscriptionError):
    """A Stripe or PayPal call failed."""

    status_code = 502

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(message)
        self.provider = provider
