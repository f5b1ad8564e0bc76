"""Side effects of a settled payment, applied inside one database transaction.

Success: order -> paid, upsert the transaction row, lock and decrement stock
(ascending SKU id), drop matching cart entries, ship. Failure: order -> failed,
upsert a failed transaction row, cancel shipping. Any shortage rolls the whole
transaction back, including the status change.
"""

import logging

from django.db import DEFAULT_DB_ALIAS, transaction
from django.db.transaction import TransactionManagementError

from cart.models import ShoppingCartItem
from orders.models import OrderLine, Shipping, ShippingLog
from products.models import ProductItem

from . import state
from .models import PaymentTransaction
from .notifications import GatewayNotification
from .results import Outcome, SettlementResult

logger = logging.getLogger(__name__)


def _require_atomic(using):
    if not transaction.get_connection(using).in_atomic_block:
        raise TransactionManagementError('Settlement side effects must run inside transaction.atomic().')


def apply_success(order, notification: GatewayNotification, *, now, using=DEFAULT_DB_ALIAS) -> SettlementResult:
    _require_atomic(using)
    code = notification.transaction_code
    paid_at = notification.pay_date or now

    if not state.mark_paid(order.pk, paid_at, using=using):
        return SettlementResult(Outcome.ALREADY_SETTLED, order_id=order.pk,
                                payment_status=state.PAID, transaction_code=code)

    _upsert_transaction(order, notification, PaymentTransaction.STATUS_SUCCESS, paid_at=paid_at, now=now, using=using)

    requested = _requested_quantities(order, using)
    shortages = _lock_and_decrement_stock(requested, using)
    if shortages:
        transaction.set_rollback(True, using=using)
        detail = '; '.join(
            f"SKU {sku}: requested {qty}, available {available}" for sku, qty, available in shortages
        )
        return SettlementResult(Outcome.INSUFFICIENT_STOCK, order_id=order.pk,
                                payment_status=order.payment_status, transaction_code=code, detail=detail)

    removed = _clear_cart_entries(order, list(requested), using)
    _set_shipping_status(order, Shipping.DISPATCH_READY, f"Payment {code} succeeded", using)

    logger.info("Order settled as paid order=%s txn=%s amount=%s cart_entries_removed=%s",
                order.pk, code, notification.amount, removed)
    return SettlementResult(Outcome.SETTLED_PAID, order_id=order.pk,
                            payment_status=state.PAID, transaction_code=code)


def apply_failure(order, notification: GatewayNotification, *, now, using=DEFAULT_DB_ALIAS) -> SettlementResult:
    _require_atomic(using)
    code = notification.transaction_code

    if not state.mark_failed(order.pk, using=using):
        return SettlementResult(Outcome.ALREADY_SETTLED, order_id=order.pk,
                                payment_status=state.PAID, transaction_code=code)

    _upsert_transaction(order, notification, PaymentTransaction.STATUS_FAILED, paid_at=None, now=now, using=using)
    _set_shipping_status(order, Shipping.NOT_DISPATCHED,
                         f"Payment {code} failed ({notification.response_code})", using)

    logger.warning("Order settled as failed order=%s txn=%s response_code=%s error=%s",
                   order.pk, code, notification.response_code, notification.message)
    return SettlementResult(Outcome.SETTLED_FAILED, order_id=order.pk,
                            payment_status=state.FAILED, transaction_code=code)


def _upsert_transaction(order, notification, status, *, paid_at, now, using):
    tx, created = PaymentTransaction.objects.using(using).update_or_create(
        order=order,
        transaction_code=notification.transaction_code,
        defaults={
            'payment_method': 'vnpay',
            'amount': notification.amount or 0,
            'status': status,
            'bank_code': notification.bank_code,
            'response_code': notification.response_code,
            'transaction_info': notification.audit_info(now),
            'paid_at': paid_at,
        },
    )
    return tx


def _requested_quantities(order, using) -> dict[int, int]:
    """Quantity per SKU id; an order may list the same SKU more than once."""
    requested: dict[int, int] = {}
    lines = OrderLine.objects.using(using).filter(order_id=order.pk).values_list('product_item_id', 'qty')
    for sku_id, qty in lines:
        requested[sku_id] = requested.get(sku_id, 0) + int(qty or 0)
    return requested


def _lock_and_decrement_stock(requested: dict[int, int], using) -> list[tuple[str, int, int]]:
    """Lock SKUs in ascending id order, verify every quantity, then decrement.

    Returns the shortages; nothing is written when there is any.
    """
    locked = list(
        ProductItem.objects.using(using)
        .select_for_update()
        .filter(id__in=sorted(requested))
        .order_by('id')
    )
    sku_by_id = {s.id: s for s in locked}

    shortages = []
    for sku_id in sorted(requested):
        qty = requested[sku_id]
        sku = sku_by_id.get(sku_id)
        available = int(sku.qty_in_stock or 0) if sku else 0
        if sku is None or available < qty:
            shortages.append((sku.sku if sku else str(sku_id), qty, available))
    if shortages:
        return shortages

    for sku in locked:
        sku.qty_in_stock = int(sku.qty_in_stock or 0) - requested[sku.id]
        sku.save(update_fields=['qty_in_stock'])
    return []


def _clear_cart_entries(order, sku_ids, using) -> int:
    if not sku_ids:
        return 0
    removed, _ = (
        ShoppingCartItem.objects.using(using)
        .filter(cart__user_id=order.user_id, product_item_id__in=sku_ids)
        .delete()
    )
    return removed


def _set_shipping_status(order, new_status, reason, using):
    shipping, _ = Shipping.objects.using(using).select_for_update().get_or_create(
        order=order, defaults={'shipping_status': Shipping.STATUS_NODONE},
    )
    old_status = shipping.shipping_status
    if old_status == new_status:
        return shipping
    shipping.shipping_status = new_status
    shipping.save(update_fields=['shipping_status', 'updated_at'])
    ShippingLog.objects.using(using).create(
        shipping=shipping, old_status=old_status, new_status=new_status, reason=reason[:255],
    )
    return shipping
