"""Settlement outcomes and their gateway acknowledgement codes."""

from dataclasses import dataclass

from django.db import models


class Outcome(models.TextChoices):
    SETTLED_PAID = 'settled-paid', 'Settled as paid'
    SETTLED_FAILED = 'settled-failed', 'Settled as failed'
    ALREADY_SETTLED = 'already-settled', 'Already settled'
    INVALID_SIGNATURE = 'invalid-signature', 'Invalid signature'
    ORDER_NOT_FOUND = 'order-not-found', 'Order not found'
    AMOUNT_MISMATCH = 'amount-mismatch', 'Amount mismatch'
    LOCK_BUSY = 'lock-busy', 'Settlement in progress'
    INSUFFICIENT_STOCK = 'insufficient-stock', 'Insufficient stock'
    STORAGE_ERROR = 'storage-error', 'Storage error'
    UNKNOWN_ERROR = 'unknown-error', 'Unknown error'


# Rejections the gateway must not retry.
TERMINAL_REJECTIONS = frozenset({
    Outcome.INVALID_SIGNATURE,
    Outcome.ORDER_NOT_FOUND,
    Outcome.AMOUNT_MISMATCH,
})

RETRYABLE = frozenset({
    Outcome.LOCK_BUSY,
    Outcome.STORAGE_ERROR,
    Outcome.INSUFFICIENT_STOCK,
    Outcome.UNKNOWN_ERROR,
})

# IPN acknowledgement vocabulary: (RspCode, Message).
IPN_ACCEPTED = ('00', 'Confirm Success')
IPN_ALREADY_SETTLED = ('02', 'Order already confirmed')
IPN_ORDER_NOT_FOUND = ('01', 'Order not found')
IPN_AMOUNT_MISMATCH = ('04', 'Invalid amount')
IPN_INVALID_SIGNATURE = ('97', 'Invalid signature')
IPN_UNKNOWN_ERROR = ('99', 'Unknown error')

_IPN_CODES = {
    Outcome.SETTLED_PAID: IPN_ACCEPTED,
    Outcome.SETTLED_FAILED: IPN_ACCEPTED,
    Outcome.ALREADY_SETTLED: IPN_ALREADY_SETTLED,
    Outcome.ORDER_NOT_FOUND: IPN_ORDER_NOT_FOUND,
    Outcome.AMOUNT_MISMATCH: IPN_AMOUNT_MISMATCH,
    Outcome.INVALID_SIGNATURE: IPN_INVALID_SIGNATURE,
}


@dataclass
class SettlementResult:
    outcome: Outcome
    order_id: int | None = None
    payment_status: str | None = None
    transaction_code: str = ''
    detail: str = ''

    @property
    def is_settled(self) -> bool:
        return self.outcome in (Outcome.SETTLED_PAID, Outcome.SETTLED_FAILED, Outcome.ALREADY_SETTLED)

    @property
    def is_retryable(self) -> bool:
        return self.outcome in RETRYABLE

    def ipn_response(self) -> dict:
        code, message = _IPN_CODES.get(self.outcome, IPN_UNKNOWN_ERROR)
        return {'RspCode': code, 'Message': message}
