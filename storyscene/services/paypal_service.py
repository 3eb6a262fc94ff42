"""
PayPal Subscriptions REST client.

PayPal has no maintained Python SDK for the v1 billing API, so this talks to
the REST endpoints directly with an OAuth2 client-credentials token that is
cached until shortly before it expires.

Usage:
    service = PayPalService(settings.paypal)
    subscription = await service.get_subscription("I-ABC123")
"""

from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import structlog

from storyscene.config import PayPalConfig
from storyscene.errors import ProviderError
from storyscene.models.subscription import RetryResult

logger = structlog.get_logger(__name__)

RETRIABLE_SUBSCRIPTION_STATUSES = {"APPROVAL_PENDING", "SUSPENDED", "ACTIVE"}
FAILED_TRANSACTION_STATUSES = {"FAILED", "DECLINED"}
TOKEN_EXPIRY_MARGIN = timedelta(seconds=60)

# Header name -> field name expected by verify-webhook-signature
WEBHOOK_SIGNATURE_HEADERS = {
    "paypal-auth-algo": "auth_algo",
    "paypal-cert-url": "cert_url",
    "paypal-transmission-id": "transmission_id",
    "paypal-transmission-sig": "transmission_sig",
    "paypal-transmission-time": "transmission_time",
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    return body.get("message") or body.get("error_description") or f"HTTP {response.status_code}"


class PayPalService:
    """Service for PayPal subscription billing."""

    provider = "paypal"

    def __init__(
        self,
        config: PayPalConfig,
        client: httpx.AsyncClient | None = None,
        now_provider=_utcnow,
    ):
        """
        Initialize the PayPal service.

        Args:
            config: Credentials, webhook ID and environment selection.
            client: Optional preconfigured HTTP client (tests pass a mock transport).
            now_provider: Clock used for token expiry and transaction windows.
        """
        if not config.client_id or not config.client_secret:
            raise ValueError("PayPal client ID and secret are required")

        self.config = config
        self.now_provider = now_provider
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.request_timeout_seconds,
        )
        self._access_token: str | None = None
        self._token_expires_at: datetime | None = None

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def _get_access_token(self) -> str:
        now = self.now_provider()
        if self._access_token and self._token_expires_at and now < self._token_expires_at:
            return self._access_token

        try:
            response = await self._client.post(
                "/v1/oauth2/token",
                auth=(self.config.client_id, self.config.client_secret),
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise ProviderError(self.provider, f"PayPal auth request failed: {e}") from e
        if response.is_error:
            raise ProviderError(self.provider, f"PayPal auth failed: {_error_message(response)}")

        body = response.json()
        self._access_token = body["access_token"]
        expires_in = int(body.get("expires_in", 0))
        self._token_expires_at = now + timedelta(seconds=expires_in) - TOKEN_EXPIRY_MARGIN
        return self._access_token

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        token = await self._get_access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            **kwargs.pop("headers", {}),
        }
        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("paypal_request_failed", method=method, path=path, error=str(e))
            raise ProviderError(self.provider, f"PayPal request failed: {e}") from e

        if response.is_error:
            message = _error_message(response)
            logger.warning(
                "paypal_request_rejected",
                method=method,
                path=path,
                status_code=response.status_code,
                error=message,
            )
            raise ProviderError(self.provider, f"PayPal error: {message}")

        if not response.content:
            return {}
        return response.json()

    async def get_subscription(self, subscription_id: str) -> dict:
        return await self._request("GET", f"/v1/billing/subscriptions/{subscription_id}")

    async def cancel_subscription(self, subscription_id: str, reason: str = "Cancelled by user") -> None:
        await self._request(
            "POST",
            f"/v1/billing/subscriptions/{subscription_id}/cancel",
            json={"reason": reason},
        )
        logger.info("paypal_subscription_cancelled", subscription_id=subscription_id)

    async def revise_subscription(self, subscription_id: str, plan_id: str) -> dict:
        """Move the subscription to another billing plan."""
        return await self._request(
            "POST",
            f"/v1/billing/subscriptions/{subscription_id}/revise",
            json={"plan_id": plan_id},
        )

    async def list_transactions(self, subscription_id: str, *, days: int = 30) -> list[dict]:
        now = self.now_provider()
        body = await self._request(
            "GET",
            f"/v1/billing/subscriptions/{subscription_id}/transactions",
            params={
                "start_time": (now - timedelta(days=days)).strftime("%Y-%m-%dT%H:%M:%SZ"),
                "end_time": now.strftime("%Y-%m-%dT%H:%M:%SZ"),
            },
        )
        return body.get("transactions") or []

    async def retry_subscription_payment(self, subscription_id: str) -> RetryResult:
        """Capture the outstanding balance left by the latest failed transaction."""
        subscription = await self.get_subscription(subscription_id)
        status = subscription.get("status")
        if status not in RETRIABLE_SUBSCRIPTION_STATUSES:
            return RetryResult(
                success=False,
                status=status,
                error=f"Subscription is in {status} state, cannot retry payment",
            )

        transactions = await self.list_transactions(subscription_id)
        failed = next(
            (
                t
                for t in transactions
                if t.get("status") in FAILED_TRANSACTION_STATUSES and t.get("amount_with_breakdown")
            ),
            None,
        )
        if failed is None:
            return RetryResult(success=False, status=status, error="No failed transaction found to retry")

        gross_amount = failed["amount_with_breakdown"].get("gross_amount")
        try:
            result = await self._request(
                "POST",
                f"/v1/billing/subscriptions/{subscription_id}/capture",
                json={
                    "note": "Retry of failed payment",
                    "capture_type": "OUTSTANDING_BALANCE",
                    "amount": gross_amount,
                },
            )
        except ProviderError as e:
            return RetryResult(success=False, status=status, error=e.message)
        return RetryResult(success=True, status=result.get("status") or status)

    async def verify_webhook_signature(self, headers: Mapping[str, str], event: dict) -> bool:
        if not self.config.webhook_id:
            raise ValueError("PayPal webhook ID is not configured")

        lowered = {k.lower(): v for k, v in headers.items()}
        fields: dict[str, Any] = {}
        for header, field in WEBHOOK_SIGNATURE_HEADERS.items():
            value = lowered.get(header)
            if not value:
                return False
            fields[field] = value

        body = await self._request(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            json={**fields, "webhook_id": self.config.webhook_id, "webhook_event": event},
        )
        return body.get("verification_status") == "SUCCESS"
