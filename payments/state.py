"""Payment status transitions for orders.

``unpaid -> paid`` and ``unpaid -> failed``; ``failed -> paid`` is allowed
only for a different gateway transaction code (the customer paid again after a
failed attempt). ``paid`` is terminal. Every write is a conditional UPDATE
guarded by ``payment_status != 'paid'`` so a lost lease race cannot
overwrite a settled order.
"""

from django.db import DEFAULT_DB_ALIAS

from orders.models import ShopOrder

from .models import PaymentTransaction
from .notifications import GatewayNotification
from .results import Outcome, SettlementResult

PAID = ShopOrder.PAYMENT_PAID
FAILED = ShopOrder.PAYMENT_FAILED
UNPAID = ShopOrder.PAYMENT_UNPAID

_ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    UNPAID: {PAID, FAILED},
    FAILED: {PAID, FAILED},
    PAID: set(),
}


def transition_allowed(current: str, target: str) -> bool:
    return target in _ALLOWED_TRANSITIONS.get(current, set())


def current_payment_status(order_id, *, using=DEFAULT_DB_ALIAS, for_update=False) -> str | None:
    qs = ShopOrder.objects.using(using).filter(pk=order_id)
    if for_update:
        qs = qs.select_for_update()
    return qs.values_list('payment_status', flat=True).first()


def check_already_settled(order_id, notification: GatewayNotification,
                          *, using=DEFAULT_DB_ALIAS) -> SettlementResult | None:
    """Re-read the order and short-circuit replays.

    Must run inside the settlement transaction, before any write. Returns a
    result when the notification must not be applied, else None.
    """
    status = current_payment_status(order_id, using=using, for_update=True)
    if status is None:
        return SettlementResult(Outcome.ORDER_NOT_FOUND, order_id=order_id)

    if status == PAID:
        return SettlementResult(
            Outcome.ALREADY_SETTLED, order_id=order_id, payment_status=status,
            transaction_code=notification.transaction_code,
        )

    # A code that already failed stays failed, whatever a later replay claims.
    if status == FAILED:
        same_failure = PaymentTransaction.objects.using(using).filter(
            order_id=order_id,
            transaction_code=notification.transaction_code,
            status=PaymentTransaction.STATUS_FAILED,
        ).exists()
        if same_failure:
            return SettlementResult(
                Outcome.ALREADY_SETTLED, order_id=order_id, payment_status=status,
                transaction_code=notification.transaction_code,
            )
    return None


def mark_paid(order_id, paid_at, *, using=DEFAULT_DB_ALIAS) -> bool:
    """Conditional ``-> paid``; False means another attempt already settled the order."""
    rows = (
        ShopOrder.objects.using(using)
        .filter(pk=order_id)
        .exclude(payment_status=PAID)
        .update(payment_status=PAID, paid_at=paid_at)
    )
    return rows == 1


def mark_failed(order_id, *, using=DEFAULT_DB_ALIAS) -> bool:
    rows = (
        ShopOrder.objects.using(using)
        .filter(pk=order_id)
        .exclude(payment_status=PAID)
        .update(payment_status=FAILED)
    )
    return rows == 1
