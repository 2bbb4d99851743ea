import logging
import time

from fastapi import APIRouter, BackgroundTasks, Depends, Request

from .db import get_db
from .deps import ACCOUNT_SUPERUSER, get_current_user, require_internal_caller
from .errors import NotFoundError
from .ledger import get_transaction_by_provider_transaction_id
from .observability import duration_ms, log_ctx, log_ctx_json
from .payment_engine import apply_payment
from .schemas import PaymentConfirmation, PaymentOutcomeResponse, TransactionResponse

logger = logging.getLogger("tribe-payments")

router = APIRouter(prefix="/v1/payments", tags=["Payments"])


def _can_read_transaction(user: dict, transaction: dict) -> bool:
    if user.get("account_type") == ACCOUNT_SUPERUSER:
        return True
    user_id = str(user.get("id"))
    return user_id in {str(transaction["subscriber_id"]), str(transaction["creator_id"])}


@router.post("/confirmations", response_model=PaymentOutcomeResponse)
async def confirm_payment(
    payload: PaymentConfirmation,
    request: Request,
    background_tasks: BackgroundTasks,
    _caller=Depends(require_internal_caller),
    conn=Depends(get_db),
):
    started_at = time.monotonic()
    outcome = await apply_payment(conn, payload, background_tasks=background_tasks)
    logger.info(
        "PAYMENT_CONFIRMATION_DONE context=%s",
        log_ctx_json(
            log_ctx(
                request,
                user_id=payload.subscriberId,
                provider_transaction_id=payload.providerTransactionId,
                extra={
                    "duration_ms": duration_ms(started_at),
                    "action": outcome.action,
                    "already_processed": outcome.already_processed,
                },
            )
        ),
    )
    return outcome.to_response()


@router.get("/transactions/{provider_transaction_id}", response_model=TransactionResponse)
async def read_transaction(
    provider_transaction_id: str,
    user=Depends(get_current_user),
    conn=Depends(get_db),
):
    transaction = await get_transaction_by_provider_transaction_id(conn, provider_transaction_id)
    # Other users get the same 404 as a missing entry.
    if transaction is None or not _can_read_transaction(user, transaction):
        raise NotFoundError("transaction")

    return build_transaction_response(transaction)


def build_transaction_response(transaction: dict) -> TransactionResponse:
    return TransactionResponse(
        id=str(transaction["id"]),
        subscriptionId=str(transaction["subscription_id"]),
        subscriberId=str(transaction["subscriber_id"]),
        creatorId=str(transaction["creator_id"]),
        amount=transaction["amount"],
        currency=transaction["currency"],
        status=transaction["status"],
        provider=transaction["provider"],
        providerTransactionId=transaction["provider_transaction_id"],
        paymentMethod=transaction.get("payment_method"),
        createdAt=transaction.get("created_at"),
    )
