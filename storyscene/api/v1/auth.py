"""Profile endpoint for the authenticated user."""

from fastapi import APIRouter, Request
from pydantic import BaseModel

from storyscene.api.dependencies import get_subscription_service
from storyscene.auth import CurrentUser
from storyscene.models.subscription import PaymentMethodSummary, SubscriptionState

router = APIRouter(prefix="/auth", tags=["auth"])


class MeResponse(BaseModel):
    success: bool = True
    id: str
    email: str | None = None
    name: str | None = None
    role: str
    payment_method: PaymentMethodSummary | None = None
    subscription: SubscriptionState


@router.get("/me", response_model=MeResponse)
async def me(request: Request, user: CurrentUser) -> MeResponse:
    """Account summary, created on first sight with the free allotment."""
    service = get_subscription_service(request)
    account = await service.get_or_create_account(user.id, user.email, user.name)
    return MeResponse(
        id=account.user_id,
        email=account.email,
        name=account.name,
        role=account.role,
        payment_method=account.payment_method,
        subscription=account.subscription,
    )
