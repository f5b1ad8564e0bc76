"""Payment Settlement Coordinator.

Both ingress paths (gateway IPN and browser return) call
:meth:`SettlementCoordinator.settle`, which runs:

    signature -> order lookup -> amount -> lease -> idempotency -> side effects

Verification failures never reach the order. Collaborators (lease manager,
clock, database alias, secret) are injected so tests and alternate
deployments can swap them.
"""

import logging

from django.db import DEFAULT_DB_ALIAS, DatabaseError, transaction
from django.db.models import F
from django.utils import timezone

from orders.models import ShopOrder

from . import fulfillment, state
from .locks import default_lock_manager
from .models import SettlementIncident
from .notifications import GatewayNotification
from .reconcile import amount_matches
from .results import Outcome, SettlementResult
from .signature import verify_signature

logger = logging.getLogger('payments.settlement')

WEBHOOK = 'webhook'
REDIRECT = 'redirect'


class SettlementCoordinator:
    """Turns a verified gateway notification into an exactly-once order update."""

    def __init__(self, *, locks=None, clock=None, secret=None, tolerance=None, using=DEFAULT_DB_ALIAS):
        self.locks = locks if locks is not None else default_lock_manager()
        self.clock = clock or timezone.now
        self.secret = secret
        self.tolerance = tolerance
        self.using = using

    def settle(self, params: dict, channel: str = WEBHOOK) -> SettlementResult:
        params = dict(params)
        logger.info("Gateway notification received channel=%s txn_ref=%s response_code=%s",
                    channel, params.get('vnp_TxnRef'), params.get('vnp_ResponseCode'))

        if not verify_signature(params, secret=self.secret):
            logger.warning("Rejected notification with invalid signature channel=%s txn_ref=%s",
                           channel, params.get('vnp_TxnRef'))
            return SettlementResult(Outcome.INVALID_SIGNATURE)

        notification = GatewayNotification.from_params(params)
        order = self.current_order(notification.order_id)
        if order is None:
            logger.warning("Notification for unknown order channel=%s txn_ref=%s",
                           channel, notification.txn_ref)
            return SettlementResult(Outcome.ORDER_NOT_FOUND, order_id=notification.order_id,
                                    transaction_code=notification.transaction_code)

        if not amount_matches(notification.amount, order.final_amount, self.tolerance):
            logger.warning("Amount mismatch channel=%s order=%s notified=%s expected=%s",
                           channel, order.pk, notification.amount, order.final_amount)
            return SettlementResult(Outcome.AMOUNT_MISMATCH, order_id=order.pk,
                                    payment_status=order.payment_status,
                                    transaction_code=notification.transaction_code)

        with self.locks.lease(order.pk) as lease:
            if not lease.acquired:
                return SettlementResult(Outcome.LOCK_BUSY, order_id=order.pk,
                                        payment_status=order.payment_status,
                                        transaction_code=notification.transaction_code)
            result = self._apply(order, notification)
            if result.outcome == Outcome.INSUFFICIENT_STOCK:
                self._escalate(order, notification, result)

        logger.info("Settlement finished channel=%s order=%s txn=%s outcome=%s",
                    channel, order.pk, result.transaction_code, result.outcome.value)
        return result

    def current_order(self, order_id):
        """Fresh read of the order, or None."""
        if order_id is None:
            return None
        return ShopOrder.objects.using(self.using).filter(pk=order_id).first()

    def _apply(self, order, notification) -> SettlementResult:
        now = self.clock()
        try:
            with transaction.atomic(using=self.using):
                settled = state.check_already_settled(order.pk, notification, using=self.using)
                if settled is not None:
                    return settled
                if notification.is_success:
                    return fulfillment.apply_success(order, notification, now=now, using=self.using)
                return fulfillment.apply_failure(order, notification, now=now, using=self.using)
        except DatabaseError as exc:
            logger.exception("Settlement transaction rolled back order=%s txn=%s",
                             order.pk, notification.transaction_code)
            return SettlementResult(Outcome.STORAGE_ERROR, order_id=order.pk,
                                    transaction_code=notification.transaction_code, detail=str(exc))

    def _escalate(self, order, notification, result):
        logger.error(
            "Paid gateway transaction could not be fulfilled, manual reconciliation required "
            "order=%s txn=%s amount=%s detail=%s",
            order.pk, notification.transaction_code, notification.amount, result.detail,
        )
        try:
            with transaction.atomic(using=self.using):
                # One open incident per charge; redeliveries refresh it.
                incident, created = (
                    SettlementIncident.objects.using(self.using)
                    .select_for_update()
                    .get_or_create(
                        order=order,
                        transaction_code=notification.transaction_code,
                        kind=SettlementIncident.KIND_INSUFFICIENT_STOCK,
                        resolved=False,
                        defaults={
                            'amount': notification.amount or 0,
                            'payload': notification.params,
                            'detail': result.detail,
                        },
                    )
                )
                if not created:
                    incident.attempts = F('attempts') + 1
                    incident.payload = notification.params
                    incident.detail = result.detail
                    incident.save(update_fields=['attempts', 'payload', 'detail', 'updated_at'])
        except DatabaseError:
            logger.exception("Could not record settlement incident order=%s txn=%s",
                             order.pk, notification.transaction_code)


def settle_notification(params: dict, channel: str = WEBHOOK, **kwargs) -> SettlementResult:
    return SettlementCoordinator(**kwargs).settle(params, channel=channel)
