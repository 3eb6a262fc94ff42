"""Admin endpoints for the audit trail, payment ledger and scheduler."""

import structlog
from fastapi import APIRouter, Query, Request
from pydantic import BaseModel

from storyscene.api.dependencies import get_scheduler, get_subscription_service
from storyscene.auth import AdminUser
from storyscene.models.subscription import (
    LogEventType,
    Payment,
    PaymentStatus,
    RetryResult,
    SubscriptionLog,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


class LogsResponse(BaseModel):
    success: bool = True
    logs: list[SubscriptionLog]


class PaymentsResponse(BaseModel):
    success: bool = True
    payments: list[Payment]


class RetryResponse(BaseModel):
    success: bool
    result: RetryResult


class SchedulerRunResponse(BaseModel):
    success: bool = True
    cycles_reset: int | None
    subscriptions_expired: int | None


@router.get("/subscription-logs", response_model=LogsResponse)
async def subscription_logs(
    request: Request,
    admin: AdminUser,
    user_id: str | None = None,
    event_type: LogEventType | None = None,
    successful: bool | None = None,
    limit: int = Query(default=100, ge=1, le=500),
) -> LogsResponse:
    service = get_subscription_service(request)
    logs = await service.list_logs(
        user_id=user_id, event_type=event_type, successful=successful, limit=limit
    )
    return LogsResponse(logs=logs)


@router.get("/payments", response_model=PaymentsResponse)
async def list_payments(
    request: Request,
    admin: AdminUser,
    user_id: str | None = None,
    status: PaymentStatus | None = None,
    limit: int = Query(default=50, ge=1, le=500),
) -> PaymentsResponse:
    service = get_subscription_service(request)
    payments = await service.list_payments(user_id=user_id, status=status, limit=limit)
    return PaymentsResponse(payments=payments)


@router.post("/payments/{payment_key}/retry", response_model=RetryResponse)
async def retry_payment(payment_key: str, request: Request, admin: AdminUser) -> RetryResponse:
    """Retry a failed payment with the customer's stored payment method."""
    service = get_subscription_service(request)
    logger.info("admin_payment_retry_requested", admin_id=admin.id, payment_key=payment_key)
    result = await service.retry_payment(payment_key)
    return RetryResponse(success=result.success, result=result)


@router.post("/scheduler/run", response_model=SchedulerRunResponse)
async def run_scheduler(request: Request, admin: AdminUser) -> SchedulerRunResponse:
    """Run the credit-cycle reset and expiry jobs now."""
    scheduler = get_scheduler(request)
    logger.info("admin_scheduler_run_requested", admin_id=admin.id)
    counts = await scheduler.run_now()
    return SchedulerRunResponse(**counts)
