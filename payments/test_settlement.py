"""Settlement pipeline tests: state guards, side effects and idempotency."""

from datetime import datetime, timezone as dt_timezone
from unittest import mock

from django.core.cache import caches
from django.db import DatabaseError, transaction
from django.test import TestCase, override_settings

from cart.models import ShoppingCartItem
from orders.models import Shipping, ShippingLog, ShopOrder
from products.models import Product, ProductItem

from . import fulfillment, state
from .locks import SettlementLockManager
from .models import PaymentTransaction, SettlementIncident
from .notifications import GatewayNotification
from .results import Outcome
from .services import REDIRECT, WEBHOOK, SettlementCoordinator, settle_notification
from .tests import (
	TEST_SETTLEMENT, TEST_VNPAY, create_customer, create_order, create_sku, fill_cart, gateway_params,
)

FIXED_NOW = datetime(2026, 1, 15, 4, 0, tzinfo=dt_timezone.utc)


@override_settings(VNPAY=TEST_VNPAY, SETTLEMENT=TEST_SETTLEMENT)
class SettlementTestBase(TestCase):

	@classmethod
	def setUpTestData(cls):
		cls.customer = create_customer('settle_customer')
		cls.other_customer = create_customer('other_customer')
		cls.product = Product.objects.create(name='Linen Shirt')
		cls.sku_small = create_sku(cls.product, 'LIN-S', price=50000, stock=10)
		cls.sku_large = create_sku(cls.product, 'LIN-L', price=50000, stock=5)
		cls.sku_other = create_sku(cls.product, 'LIN-XL', price=70000, stock=7)

	def setUp(self):
		caches['default'].clear()
		self.coordinator = SettlementCoordinator(clock=lambda: FIXED_NOW)

	def stock(self, sku):
		return ProductItem.objects.get(pk=sku.pk).qty_in_stock

	def order_state(self, order):
		order.refresh_from_db()
		return order.payment_status

	def shipping_status(self, order):
		return Shipping.objects.get(order=order).shipping_status


class SuccessfulSettlementTests(SettlementTestBase):
	"""A verified success notification applies every side effect once."""

	def setUp(self):
		super().setUp()
		# 2 x small + 1 x large = 150000
		self.order = create_order(self.customer, [(self.sku_small, 2), (self.sku_large, 1)])
		fill_cart(self.customer, [(self.sku_small, 2), (self.sku_large, 1), (self.sku_other, 1)])
		fill_cart(self.other_customer, [(self.sku_small, 1)])

	def test_settles_order_as_paid(self):
		result = self.coordinator.settle(gateway_params(self.order.pk, 150000, transaction_no='TXN1'))

		self.assertEqual(result.outcome, Outcome.SETTLED_PAID)
		self.assertEqual(result.ipn_response(), {'RspCode': '00', 'Message': 'Confirm Success'})
		self.order.refresh_from_db()
		self.assertEqual(self.order.payment_status, ShopOrder.PAYMENT_PAID)
		self.assertEqual(self.order.paid_at, datetime(2026, 1, 15, 3, 30, tzinfo=dt_timezone.utc))

		tx = PaymentTransaction.objects.get(order=self.order)
		self.assertEqual(tx.transaction_code, 'TXN1')
		self.assertEqual(tx.status, PaymentTransaction.STATUS_SUCCESS)
		self.assertEqual(tx.amount, 150000)
		self.assertEqual(tx.bank_code, 'NCB')
		self.assertEqual(tx.transaction_info['vnp_TxnRef'], f'{self.order.pk}_1768448000')
		self.assertIn('vnp_SecureHash', tx.transaction_info['full_ipn_data'])

		self.assertEqual(self.stock(self.sku_small), 8)
		self.assertEqual(self.stock(self.sku_large), 4)
		self.assertEqual(self.stock(self.sku_other), 7)

		self.assertEqual(self.shipping_status(self.order), Shipping.DISPATCH_READY)
		log = ShippingLog.objects.get(shipping__order=self.order)
		self.assertEqual((log.old_status, log.new_status), (Shipping.STATUS_NODONE, Shipping.STATUS_PENDING))

	def test_removes_only_purchased_cart_entries_of_the_payer(self):
		self.coordinator.settle(gateway_params(self.order.pk, 150000, transaction_no='TXN1'))

		remaining = ShoppingCartItem.objects.filter(cart__user=self.customer)
		self.assertEqual(list(remaining.values_list('product_item_id', flat=True)), [self.sku_other.pk])
		self.assertTrue(ShoppingCartItem.objects.filter(cart__user=self.other_customer).exists())

	def test_paid_at_falls_back_to_clock_without_pay_date(self):
		params = gateway_params(self.order.pk, 150000, transaction_no='TXN1', pay_date='')
		self.coordinator.settle(params)
		self.order.refresh_from_db()
		self.assertEqual(self.order.paid_at, FIXED_NOW)

	def test_redelivery_via_other_path_is_already_settled(self):
		params = gateway_params(self.order.pk, 150000, transaction_no='TXN1')
		self.coordinator.settle(params, channel=WEBHOOK)

		result = self.coordinator.settle(params, channel=REDIRECT)

		self.assertEqual(result.outcome, Outcome.ALREADY_SETTLED)
		self.assertEqual(result.ipn_response()['RspCode'], '02')
		self.assertEqual(PaymentTransaction.objects.filter(order=self.order).count(), 1)
		self.assertEqual(self.order_state(self.order), ShopOrder.PAYMENT_PAID)
		self.assertEqual(self.stock(self.sku_small), 8)

	def test_repeated_delivery_applies_side_effects_once(self):
		params = gateway_params(self.order.pk, 150000, transaction_no='TXN1')
		outcomes = [
			self.coordinator.settle(params, channel=WEBHOOK if i % 2 == 0 else REDIRECT).outcome
			for i in range(5)
		]

		self.assertEqual(outcomes.count(Outcome.SETTLED_PAID), 1)
		self.assertEqual(outcomes[0], Outcome.SETTLED_PAID)
		self.assertEqual(outcomes.count(Outcome.ALREADY_SETTLED), 4)
		self.assertEqual(PaymentTransaction.objects.filter(order=self.order).count(), 1)
		self.assertEqual(self.stock(self.sku_small), 8)
		self.assertEqual(self.stock(self.sku_large), 4)
		self.assertEqual(ShippingLog.objects.filter(shipping__order=self.order).count(), 1)

	def test_a_different_success_after_paid_is_a_no_op(self):
		self.coordinator.settle(gateway_params(self.order.pk, 150000, transaction_no='TXN1'))
		result = self.coordinator.settle(gateway_params(self.order.pk, 150000, transaction_no='TXN2'))

		self.assertEqual(result.outcome, Outcome.ALREADY_SETTLED)
		self.assertEqual(PaymentTransaction.objects.filter(order=self.order).count(), 1)

	def test_failure_after_paid_does_not_downgrade(self):
		self.coordinator.settle(gateway_params(self.order.pk, 150000, transaction_no='TXN1'))
		result = self.coordinator.settle(
			gateway_params(self.order.pk, 150000, response_code='24', transaction_no='0')
		)

		self.assertEqual(result.outcome, Outcome.ALREADY_SETTLED)
		self.assertEqual(self.order_state(self.order), ShopOrder.PAYMENT_PAID)
		self.assertEqual(self.shipping_status(self.order), Shipping.DISPATCH_READY)

	def test_module_level_helper(self):
		result = settle_notification(gateway_params(self.order.pk, 150000, transaction_no='TXN1'))
		self.assertTrue(result.is_settled)


class FailedSettlementTests(SettlementTestBase):
	"""Non-success notifications mark the order failed and leave stock alone."""

	def setUp(self):
		super().setUp()
		self.order = create_order(self.customer, [(self.sku_small, 2), (self.sku_large, 1)])
		fill_cart(self.customer, [(self.sku_small, 2)])

	def failure_params(self, **kwargs):
		kwargs.setdefault('response_code', '24')
		kwargs.setdefault('transaction_no', '0')
		kwargs.setdefault('txn_ref', f'{self.order.pk}_1768448000')
		return gateway_params(self.order.pk, 150000, **kwargs)

	def test_failure_branch(self):
		result = self.coordinator.settle(self.failure_params())

		self.assertEqual(result.outcome, Outcome.SETTLED_FAILED)
		self.assertEqual(result.ipn_response()['RspCode'], '00')
		self.assertEqual(self.order_state(self.order), ShopOrder.PAYMENT_FAILED)
		self.assertIsNone(self.order.paid_at)

		tx = PaymentTransaction.objects.get(order=self.order)
		self.assertEqual(tx.transaction_code, f'FAILED-{self.order.pk}_1768448000')
		self.assertEqual(tx.status, PaymentTransaction.STATUS_FAILED)
		self.assertEqual(tx.response_code, '24')
		self.assertEqual(tx.transaction_info['error_message'], 'Customer cancelled the transaction.')

		self.assertEqual(self.stock(self.sku_small), 10)
		self.assertEqual(ShoppingCartItem.objects.filter(cart__user=self.customer).count(), 1)
		self.assertEqual(self.shipping_status(self.order), Shipping.NOT_DISPATCHED)

	def test_same_failure_replayed_is_a_no_op(self):
		self.coordinator.settle(self.failure_params())
		result = self.coordinator.settle(self.failure_params())

		self.assertEqual(result.outcome, Outcome.ALREADY_SETTLED)
		self.assertEqual(PaymentTransaction.objects.filter(order=self.order).count(), 1)
		self.assertEqual(ShippingLog.objects.filter(shipping__order=self.order).count(), 1)

	def test_failed_order_can_be_paid_by_a_new_transaction(self):
		self.coordinator.settle(self.failure_params())

		result = self.coordinator.settle(
			gateway_params(self.order.pk, 150000, transaction_no='TXN2', txn_ref=f'{self.order.pk}_1768449000')
		)

		self.assertEqual(result.outcome, Outcome.SETTLED_PAID)
		self.assertEqual(self.order_state(self.order), ShopOrder.PAYMENT_PAID)
		statuses = dict(PaymentTransaction.objects.filter(order=self.order).values_list('transaction_code', 'status'))
		self.assertEqual(statuses['TXN2'], PaymentTransaction.STATUS_SUCCESS)
		self.assertEqual(len(statuses), 2)
		self.assertEqual(self.stock(self.sku_small), 8)
		self.assertEqual(self.shipping_status(self.order), Shipping.DISPATCH_READY)

	def test_success_replaying_a_failed_code_is_ignored(self):
		self.coordinator.settle(self.failure_params(transaction_no='TXN5'))

		result = self.coordinator.settle(gateway_params(self.order.pk, 150000, transaction_no='TXN5'))

		self.assertEqual(result.outcome, Outcome.ALREADY_SETTLED)
		self.assertEqual(self.order_state(self.order), ShopOrder.PAYMENT_FAILED)
		tx = PaymentTransaction.objects.get(order=self.order)
		self.assertEqual(tx.status, PaymentTransaction.STATUS_FAILED)
		self.assertEqual(self.stock(self.sku_small), 10)

	def test_pending_transaction_status_is_treated_as_failure(self):
		result = self.coordinator.settle(
			gateway_params(self.order.pk, 150000, transaction_status='02', transaction_no='TXN9')
		)
		self.assertEqual(result.outcome, Outcome.SETTLED_FAILED)
		self.assertEqual(PaymentTransaction.objects.get(order=self.order).transaction_code, 'TXN9')


class RejectionTests(SettlementTestBase):
	"""Rejected notifications never touch order, transactions or stock."""

	def setUp(self):
		super().setUp()
		self.order = create_order(self.customer, [(self.sku_small, 4)], final_amount=200000)

	def assertUntouched(self):
		self.assertEqual(self.order_state(self.order), ShopOrder.PAYMENT_UNPAID)
		self.assertFalse(PaymentTransaction.objects.filter(order=self.order).exists())
		self.assertEqual(self.stock(self.sku_small), 10)
		self.assertEqual(self.shipping_status(self.order), Shipping.STATUS_NODONE)

	def test_amount_mismatch(self):
		with self.assertLogs('payments.settlement', level='WARNING'):
			result = self.coordinator.settle(gateway_params(self.order.pk, 199000))

		self.assertEqual(result.outcome, Outcome.AMOUNT_MISMATCH)
		self.assertEqual(result.ipn_response(), {'RspCode': '04', 'Message': 'Invalid amount'})
		self.assertUntouched()

	def test_rounding_within_tolerance_is_accepted(self):
		result = self.coordinator.settle(gateway_params(self.order.pk, 200001))
		self.assertEqual(result.outcome, Outcome.SETTLED_PAID)

	def test_invalid_signature(self):
		params = gateway_params(self.order.pk, 200000)
		params['vnp_ResponseCode'] = '00'
		params['vnp_TransactionNo'] = 'FORGED'

		result = self.coordinator.settle(params)

		self.assertEqual(result.outcome, Outcome.INVALID_SIGNATURE)
		self.assertEqual(result.ipn_response()['RspCode'], '97')
		self.assertFalse(result.is_retryable)
		self.assertUntouched()

	def test_non_ascii_signature(self):
		params = gateway_params(self.order.pk, 200000)
		params['vnp_SecureHash'] = 'é' * 128

		result = self.coordinator.settle(params)

		self.assertEqual(result.outcome, Outcome.INVALID_SIGNATURE)
		self.assertEqual(result.ipn_response()['RspCode'], '97')
		self.assertUntouched()

	def test_signed_with_wrong_secret(self):
		result = self.coordinator.settle(gateway_params(self.order.pk, 200000, secret='not-the-secret'))
		self.assertEqual(result.outcome, Outcome.INVALID_SIGNATURE)
		self.assertUntouched()

	def test_unknown_order(self):
		result = self.coordinator.settle(gateway_params(999999, 200000))
		self.assertEqual(result.outcome, Outcome.ORDER_NOT_FOUND)
		self.assertEqual(result.ipn_response()['RspCode'], '01')

	def test_unparseable_reference(self):
		result = self.coordinator.settle(gateway_params(0, 200000, txn_ref='garbage'))
		self.assertEqual(result.outcome, Outcome.ORDER_NOT_FOUND)

	def test_busy_lease_defers(self):
		held = self.coordinator.locks.acquire(self.order.pk)
		try:
			result = self.coordinator.settle(gateway_params(self.order.pk, 200000))
		finally:
			self.coordinator.locks.release(held)

		self.assertEqual(result.outcome, Outcome.LOCK_BUSY)
		self.assertTrue(result.is_retryable)
		self.assertEqual(result.ipn_response()['RspCode'], '99')
		self.assertUntouched()

		retried = self.coordinator.settle(gateway_params(self.order.pk, 200000))
		self.assertEqual(retried.outcome, Outcome.SETTLED_PAID)

	def test_storage_error_rolls_back_and_releases_lease(self):
		with mock.patch('payments.fulfillment.apply_success', side_effect=DatabaseError('disk full')):
			with self.assertLogs('payments.settlement', level='ERROR'):
				result = self.coordinator.settle(gateway_params(self.order.pk, 200000))

		self.assertEqual(result.outcome, Outcome.STORAGE_ERROR)
		self.assertEqual(result.ipn_response()['RspCode'], '99')
		self.assertUntouched()
		key = self.coordinator.locks.key_for(self.order.pk)
		self.assertIsNone(caches['default'].get(key))


class InsufficientStockTests(SettlementTestBase):
	"""Stock exhaustion rolls back the paid transition and is escalated."""

	def setUp(self):
		super().setUp()
		self.sold_out = create_sku(self.product, 'LIN-XXL', price=200000, stock=0)

	def test_single_sold_out_line(self):
		order = create_order(self.customer, [(self.sold_out, 1)])
		fill_cart(self.customer, [(self.sold_out, 1)])

		with self.assertLogs('payments.settlement', level='ERROR') as logs:
			result = self.coordinator.settle(gateway_params(order.pk, 200000, transaction_no='TXN3'))

		self.assertEqual(result.outcome, Outcome.INSUFFICIENT_STOCK)
		self.assertIn('LIN-XXL', result.detail)
		self.assertEqual(result.ipn_response()['RspCode'], '99')
		self.assertIn('manual reconciliation', '\n'.join(logs.output))

		self.assertEqual(self.order_state(order), ShopOrder.PAYMENT_UNPAID)
		self.assertIsNone(order.paid_at)
		self.assertFalse(PaymentTransaction.objects.filter(order=order).exists())
		self.assertEqual(self.stock(self.sold_out), 0)
		self.assertEqual(ShoppingCartItem.objects.filter(cart__user=self.customer).count(), 1)
		self.assertEqual(self.shipping_status(order), Shipping.STATUS_NODONE)

		incident = SettlementIncident.objects.get(order=order)
		self.assertEqual(incident.transaction_code, 'TXN3')
		self.assertEqual(incident.kind, SettlementIncident.KIND_INSUFFICIENT_STOCK)
		self.assertEqual(incident.amount, 200000)
		self.assertFalse(incident.resolved)

	def test_no_partial_decrement_when_one_line_is_short(self):
		order = create_order(self.customer, [(self.sku_small, 3), (self.sku_large, 6)])

		with self.assertLogs('payments.settlement', level='ERROR'):
			result = self.coordinator.settle(gateway_params(order.pk, 450000))

		self.assertEqual(result.outcome, Outcome.INSUFFICIENT_STOCK)
		self.assertIn('requested 6, available 5', result.detail)
		self.assertEqual(self.stock(self.sku_small), 10)
		self.assertEqual(self.stock(self.sku_large), 5)
		self.assertEqual(self.order_state(order), ShopOrder.PAYMENT_UNPAID)

	def test_repeated_lines_of_one_sku_are_summed(self):
		order = create_order(self.customer, [(self.sku_large, 3), (self.sku_large, 3)])

		with self.assertLogs('payments.settlement', level='ERROR'):
			result = self.coordinator.settle(gateway_params(order.pk, 300000))

		self.assertEqual(result.outcome, Outcome.INSUFFICIENT_STOCK)
		self.assertEqual(self.stock(self.sku_large), 5)

	def test_redelivered_shortage_keeps_one_open_incident(self):
		order = create_order(self.customer, [(self.sold_out, 1)])
		params = gateway_params(order.pk, 200000, transaction_no='TXN3')

		with self.assertLogs('payments.settlement', level='ERROR'):
			for _ in range(3):
				self.coordinator.settle(params)

		incident = SettlementIncident.objects.get(order=order)
		self.assertEqual(incident.attempts, 3)
		self.assertEqual(incident.transaction_code, 'TXN3')

		SettlementIncident.objects.filter(pk=incident.pk).update(resolved=True)
		with self.assertLogs('payments.settlement', level='ERROR'):
			self.coordinator.settle(params)

		self.assertEqual(SettlementIncident.objects.filter(order=order).count(), 2)
		self.assertEqual(SettlementIncident.objects.filter(order=order, resolved=False).count(), 1)

	def test_retry_after_restock_settles(self):
		order = create_order(self.customer, [(self.sold_out, 1)])
		params = gateway_params(order.pk, 200000, transaction_no='TXN3')
		with self.assertLogs('payments.settlement', level='ERROR'):
			self.coordinator.settle(params)

		ProductItem.objects.filter(pk=self.sold_out.pk).update(qty_in_stock=2)
		result = self.coordinator.settle(params)

		self.assertEqual(result.outcome, Outcome.SETTLED_PAID)
		self.assertEqual(self.stock(self.sold_out), 1)
		self.assertEqual(PaymentTransaction.objects.filter(order=order).count(), 1)


class StateGuardTests(SettlementTestBase):
	"""The conditional update guards against stale reads and lost lease races."""

	def setUp(self):
		super().setUp()
		self.order = create_order(self.customer, [(self.sku_small, 1)])
		self.notification = GatewayNotification.from_params(
			gateway_params(self.order.pk, 50000, transaction_no='TXN1')
		)

	def test_transition_table(self):
		self.assertTrue(state.transition_allowed(state.UNPAID, state.PAID))
		self.assertTrue(state.transition_allowed(state.UNPAID, state.FAILED))
		self.assertTrue(state.transition_allowed(state.FAILED, state.PAID))
		self.assertFalse(state.transition_allowed(state.PAID, state.FAILED))
		self.assertFalse(state.transition_allowed(state.PAID, state.UNPAID))

	def test_mark_paid_affects_no_rows_once_paid(self):
		self.assertTrue(state.mark_paid(self.order.pk, FIXED_NOW))
		self.assertFalse(state.mark_paid(self.order.pk, FIXED_NOW))
		self.assertFalse(state.mark_failed(self.order.pk))
		self.assertEqual(self.order_state(self.order), ShopOrder.PAYMENT_PAID)

	def test_stale_order_loses_to_concurrent_settlement(self):
		stale = ShopOrder.objects.get(pk=self.order.pk)
		# Another worker settled the order after this one read it.
		ShopOrder.objects.filter(pk=self.order.pk).update(payment_status=ShopOrder.PAYMENT_PAID, paid_at=FIXED_NOW)

		with transaction.atomic():
			result = fulfillment.apply_success(stale, self.notification, now=FIXED_NOW)

		self.assertEqual(result.outcome, Outcome.ALREADY_SETTLED)
		self.assertFalse(PaymentTransaction.objects.filter(order=self.order).exists())
		self.assertEqual(self.stock(self.sku_small), 10)

	def test_check_already_settled(self):
		self.assertIsNone(state.check_already_settled(self.order.pk, self.notification))
		ShopOrder.objects.filter(pk=self.order.pk).update(payment_status=ShopOrder.PAYMENT_PAID)
		result = state.check_already_settled(self.order.pk, self.notification)
		self.assertEqual(result.outcome, Outcome.ALREADY_SETTLED)
		self.assertEqual(state.check_already_settled(999999, self.notification).outcome, Outcome.ORDER_NOT_FOUND)

	def test_injected_lock_manager_is_used(self):
		locks = mock.Mock(wraps=SettlementLockManager(wait_seconds=0))
		coordinator = SettlementCoordinator(locks=locks, clock=lambda: FIXED_NOW)

		coordinator.settle(gateway_params(self.order.pk, 50000))

		locks.lease.assert_called_once_with(self.order.pk)
