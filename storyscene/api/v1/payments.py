"""Payment history and saved card endpoints."""

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel

from storyscene.api.dependencies import get_subscription_service
from storyscene.auth import CurrentUser
from storyscene.models.subscription import Payment, PaymentMethodSummary

router = APIRouter(prefix="/payments", tags=["payments"])


class PaymentHistoryResponse(BaseModel):
    success: bool = True
    payments: list[Payment]


class PaymentMethodsResponse(BaseModel):
    success: bool = True
    methods: list[PaymentMethodSummary]
    default_method_id: str | None = None


class PaymentMethodDeletedResponse(BaseModel):
    success: bool = True
    message: str


@router.get("/history", response_model=PaymentHistoryResponse)
async def payment_history(
    request: Request,
    user: CurrentUser,
    limit: int = Query(default=50, ge=1, le=200),
) -> PaymentHistoryResponse:
    """The authenticated user's payments, newest first."""
    service = get_subscription_service(request)
    payments = await service.list_payments(user_id=user.id, limit=limit)
    return PaymentHistoryResponse(payments=payments)


@router.get("/methods", response_model=PaymentMethodsResponse)
async def list_payment_methods(request: Request, user: CurrentUser) -> PaymentMethodsResponse:
    service = get_subscription_service(request)
    account = await service.get_or_create_account(user.id, user.email)
    return PaymentMethodsResponse(
        methods=account.payment_methods,
        default_method_id=account.payment_method.id if account.payment_method else None,
    )


@router.delete("/methods/{payment_method_id}", response_model=PaymentMethodDeletedResponse)
async def delete_payment_method(
    payment_method_id: str, request: Request, user: CurrentUser
) -> PaymentMethodDeletedResponse:
    """Forget a saved card. Returns 404 when the user has no card with that ID."""
    service = get_subscription_service(request)
    await service.remove_payment_method(user.id, payment_method_id)
    return PaymentMethodDeletedResponse(message="Payment method deleted successfully")
