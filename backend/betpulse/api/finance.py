import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request, status

from betpulse.api.deps import (
    get_current_user,
    get_payment_service,
    get_reconciliation_service,
    require_admin,
)
from betpulse.models import User
from betpulse.schemas import (
    ApproveWithdrawalRequest,
    MobileMoneyRequest,
    PayoutResponse,
    ProviderAck,
    TransactionCreatedResponse,
    TransactionListResponse,
    TransactionResponse,
)
from betpulse.services.payments import PaymentService
from betpulse.services.reconciliation import CallbackOutcome, ReconciliationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/finance", tags=["Finance"])
webhook_router = APIRouter(prefix="/api/finance/mpesa", tags=["Webhooks"])


@router.post("/deposit", response_model=TransactionCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_deposit(
    request: MobileMoneyRequest,
    user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    tx = await service.initiate_deposit(user.id, request.amount, request.phone_number)
    return TransactionCreatedResponse(
        transaction=TransactionResponse.model_validate(tx),
        message="Deposit started. Confirm the payment on your phone.",
    )


@router.post("/withdraw", response_model=TransactionCreatedResponse, status_code=status.HTTP_201_CREATED)
async def request_withdrawal(
    request: MobileMoneyRequest,
    user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    tx = await service.request_withdrawal(user.id, request.amount, request.phone_number)
    return TransactionCreatedResponse(
        transaction=TransactionResponse.model_validate(tx),
        message="Withdrawal request registered and awaiting approval.",
    )


@router.get("/transactions", response_model=TransactionListResponse)
async def list_transactions(
    user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    transactions = await service.list_user_transactions(user.id)
    return TransactionListResponse(
        transactions=[TransactionResponse.model_validate(tx) for tx in transactions]
    )


@router.post("/admin/withdrawals/{transaction_id}/approve", response_model=PayoutResponse)
async def approve_withdrawal(
    transaction_id: str,
    request: Optional[ApproveWithdrawalRequest] = None,
    admin: User = Depends(require_admin),
    service: PaymentService = Depends(get_payment_service),
):
    remarks = request.remarks if request else None
    dispatch = await service.initiate_withdrawal_payout(transaction_id, remarks)
    logger.info(f"Withdrawal payout approved by admin {admin.id}")
    return PayoutResponse(
        message="Payment sent to M-Pesa for processing.",
        conversation_id=dispatch.conversation_id,
        originator_conversation_id=dispatch.originator_conversation_id,
        description=dispatch.description,
    )


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return None


def _ack(outcome: CallbackOutcome) -> ProviderAck:
    return ProviderAck(ResultCode=0, ResultDesc=f"Callback {outcome.value}")


@webhook_router.post("/stk-callback", response_model=ProviderAck)
async def stk_callback(
    request: Request,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    outcome = await service.handle_collection_callback(await _read_json(request))
    return _ack(outcome)


@webhook_router.post("/b2c-result", response_model=ProviderAck)
async def b2c_result(
    request: Request,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    outcome = await service.handle_disbursement_callback(await _read_json(request))
    return _ack(outcome)


@webhook_router.post("/b2c-timeout", response_model=ProviderAck)
async def b2c_timeout(
    request: Request,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    outcome = await service.handle_disbursement_timeout(await _read_json(request))
    return _ack(outcome)


@webhook_router.post("/c2b-validation", response_model=ProviderAck)
async def c2b_validation(request: Request):
    logger.info(f"C2B validation received: {await _read_json(request)}")
    return ProviderAck(ResultCode=0, ResultDesc="Accepted")


@webhook_router.post("/c2b-confirmation", response_model=ProviderAck)
async def c2b_confirmation(request: Request):
    logger.info(f"C2B confirmation received: {await _read_json(request)}")
    return ProviderAck(ResultCode=0, ResultDesc="Processed")
