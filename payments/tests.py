"""Payments app tests: signing, amounts, leases and gateway URLs.

Shared fixtures used by the settlement and webhook tests live here as well.
"""

import hashlib
import hmac
from datetime import datetime, timezone as dt_timezone
from unittest import mock
from urllib.parse import parse_qsl, urlsplit

from django.contrib.auth import get_user_model
from django.core.cache import caches
from django.core.exceptions import ImproperlyConfigured
from redis.exceptions import LockNotOwnedError
from django.test import SimpleTestCase, TestCase, override_settings

from cart.models import ShoppingCart, ShoppingCartItem
from orders.models import OrderLine, ShopOrder
from products.models import Product, ProductItem

from .gateway import PaymentRequestError, build_payment_url, order_id_from_txn_ref, parse_pay_date, response_message
from .locks import RedisSettlementLockManager, SettlementLockManager, default_lock_manager, redis_client
from .notifications import GatewayNotification
from .reconcile import amount_matches, to_gateway_amount, to_store_amount
from .signature import canonical_message, sign, verify_signature

HASH_SECRET = 'test-hash-secret'
STOREFRONT_URL = 'http://shop.test/payment/result'

TEST_VNPAY = {
	'TMN_CODE': 'BEETEST1',
	'HASH_SECRET': HASH_SECRET,
	'URL': 'https://sandbox.vnpayment.vn/paymentv2/vpcpay.html',
	'RETURN_URL': 'http://testserver/api/payments/vnpay/return/',
	'STOREFRONT_RESULT_URL': STOREFRONT_URL,
}

TEST_SETTLEMENT = {
	'LOCK_TIMEOUT': 30,
	'LOCK_WAIT': 0,
	'LOCK_POLL_INTERVAL': 0.01,
	'AMOUNT_TOLERANCE': 1,
	'CACHE_ALIAS': 'default',
}


def gateway_params(order_id, amount, *, response_code='00', transaction_status='00',
				   transaction_no='14000001', txn_ref=None, pay_date='20260115103000',
				   bank_code='NCB', secret=HASH_SECRET, **extra):
	"""Signed notification parameters as the gateway would send them."""
	params = {
		'vnp_TmnCode': 'BEETEST1',
		'vnp_Amount': str(amount * 100),
		'vnp_BankCode': bank_code,
		'vnp_OrderInfo': f'Payment for order #{order_id}',
		'vnp_PayDate': pay_date,
		'vnp_ResponseCode': response_code,
		'vnp_TransactionNo': transaction_no,
		'vnp_TransactionStatus': transaction_status,
		'vnp_TxnRef': txn_ref or f'{order_id}_1768448000',
	}
	params.update(extra)
	params['vnp_SecureHashType'] = 'HmacSHA512'
	params['vnp_SecureHash'] = sign(params, secret=secret)
	return params


def create_customer(username):
	return get_user_model().objects.create_user(
		username=username,
		email=f'{username}@example.com',
		password='12345678',
		user_type='customer',
	)


def create_sku(product, sku, *, price, stock):
	return ProductItem.objects.create(product=product, sku=sku, price=price, qty_in_stock=stock)


def create_order(user, lines, *, final_amount=None, payment_status=ShopOrder.PAYMENT_UNPAID):
	"""Order with one line per ``(sku, qty)``; ``final_amount`` defaults to the line total."""
	total = sum(sku.price * qty for sku, qty in lines)
	order = ShopOrder.objects.create(
		user=user,
		total_amount=total,
		final_amount=total if final_amount is None else final_amount,
		payment_method='vnpay',
		payment_status=payment_status,
	)
	for sku, qty in lines:
		OrderLine.objects.create(order=order, product_item=sku, qty=qty, price=sku.price)
	return order


def fill_cart(user, entries):
	cart, _ = ShoppingCart.objects.get_or_create(user=user)
	for sku, qty in entries:
		ShoppingCartItem.objects.create(cart=cart, product_item=sku, qty=qty)
	return cart


class SignatureTests(SimpleTestCase):
	"""Canonical message and HMAC-SHA512 verification."""

	def test_canonical_message_sorts_encodes_and_skips_signature_fields(self):
		params = {
			'vnp_OrderInfo': 'Payment for order #7',
			'vnp_Amount': '1000000',
			'vnp_SecureHash': 'abc',
			'vnp_SecureHashType': 'HmacSHA512',
			'vnp_ReturnUrl': 'http://a.test/r?x=1&y=2',
		}
		self.assertEqual(
			canonical_message(params),
			'vnp_Amount=1000000'
			'&vnp_OrderInfo=Payment+for+order+%237'
			'&vnp_ReturnUrl=http%3A%2F%2Fa.test%2Fr%3Fx%3D1%26y%3D2',
		)

	def test_sign_matches_hmac_sha512_of_canonical_message(self):
		params = {'vnp_TxnRef': '7_1', 'vnp_Amount': '1000000'}
		expected = hmac.new(
			HASH_SECRET.encode(), b'vnp_Amount=1000000&vnp_TxnRef=7_1', hashlib.sha512,
		).hexdigest()
		self.assertEqual(sign(params, secret=HASH_SECRET), expected)

	def test_signature_does_not_depend_on_parameter_order(self):
		a = {'vnp_A': '1', 'vnp_B': '2', 'vnp_C': '3'}
		b = {'vnp_C': '3', 'vnp_A': '1', 'vnp_B': '2'}
		self.assertEqual(sign(a, secret=HASH_SECRET), sign(b, secret=HASH_SECRET))

	def test_verify_accepts_valid_and_uppercase_hash(self):
		params = gateway_params(7, 150000)
		self.assertTrue(verify_signature(params, secret=HASH_SECRET))
		params['vnp_SecureHash'] = params['vnp_SecureHash'].upper()
		self.assertTrue(verify_signature(params, secret=HASH_SECRET))

	def test_verify_rejects_tampered_missing_or_wrong_secret(self):
		params = gateway_params(7, 150000)
		tampered = dict(params, vnp_Amount='100')
		self.assertFalse(verify_signature(tampered, secret=HASH_SECRET))

		unsigned = dict(params)
		unsigned.pop('vnp_SecureHash')
		self.assertFalse(verify_signature(unsigned, secret=HASH_SECRET))

		self.assertFalse(verify_signature(params, secret='another-secret'))

	def test_verify_rejects_non_ascii_hash(self):
		params = gateway_params(7, 150000)
		params['vnp_SecureHash'] = '\u00e9' * 128
		self.assertFalse(verify_signature(params, secret=HASH_SECRET))

	@override_settings(VNPAY=TEST_VNPAY)
	def test_secret_defaults_to_settings(self):
		self.assertTrue(verify_signature(gateway_params(7, 150000)))

	@override_settings(VNPAY={})
	def test_missing_secret_is_a_configuration_error(self):
		with self.assertRaises(ImproperlyConfigured):
			sign({'vnp_TxnRef': '1_1'})


class AmountTests(SimpleTestCase):
	"""Gateway amount scaling and tolerance."""

	def test_to_store_amount(self):
		self.assertEqual(to_store_amount('15000000'), 150000)
		self.assertEqual(to_store_amount(15000000), 150000)
		self.assertEqual(to_store_amount('15000050'), 150001)
		self.assertIsNone(to_store_amount(None))
		self.assertIsNone(to_store_amount(''))
		self.assertIsNone(to_store_amount('abc'))
		self.assertIsNone(to_store_amount('NaN'))
		self.assertIsNone(to_store_amount('1e40'))
		self.assertIsNone(to_store_amount('-Infinity'))

	def test_to_gateway_amount(self):
		self.assertEqual(to_gateway_amount(150000), 15000000)

	def test_amount_matches_within_tolerance_only(self):
		self.assertTrue(amount_matches(150000, 150000, tolerance=1))
		self.assertTrue(amount_matches(150001, 150000, tolerance=1))
		self.assertFalse(amount_matches(199000, 200000, tolerance=1))
		self.assertFalse(amount_matches(None, 200000, tolerance=1))

	@override_settings(SETTLEMENT={'AMOUNT_TOLERANCE': 0})
	def test_tolerance_from_settings(self):
		self.assertFalse(amount_matches(150001, 150000))


class NotificationTests(SimpleTestCase):
	"""Parsing of inbound gateway parameters."""

	def test_success_notification(self):
		n = GatewayNotification.from_params(gateway_params(42, 150000, transaction_no='TXN1'))
		self.assertEqual(n.order_id, 42)
		self.assertEqual(n.amount, 150000)
		self.assertTrue(n.is_success)
		self.assertEqual(n.transaction_code, 'TXN1')
		self.assertEqual(n.pay_date.utcoffset().total_seconds(), 7 * 3600)

	def test_failure_without_transaction_number_uses_reference(self):
		n = GatewayNotification.from_params(
			gateway_params(42, 150000, response_code='24', transaction_no='0', txn_ref='42_99')
		)
		self.assertFalse(n.is_success)
		self.assertEqual(n.transaction_code, 'FAILED-42_99')
		self.assertEqual(n.message, 'Customer cancelled the transaction.')

	def test_success_requires_settled_transaction_status(self):
		n = GatewayNotification.from_params(gateway_params(42, 150000, transaction_status='02'))
		self.assertFalse(n.is_success)

	def test_reference_helpers(self):
		self.assertEqual(order_id_from_txn_ref('100_1768448000'), 100)
		self.assertIsNone(order_id_from_txn_ref('abc_1'))
		self.assertIsNone(order_id_from_txn_ref(None))
		self.assertIsNone(order_id_from_txn_ref('\u00b2_1'))
		self.assertIsNone(order_id_from_txn_ref('\u0663_1'))
		self.assertIsNone(parse_pay_date('not-a-date'))
		self.assertEqual(response_message('xx'), 'Unknown error.')


class SettlementLockManagerTests(SimpleTestCase):
	"""Cache-backed per-order leases."""

	def setUp(self):
		self.cache = caches['default']
		self.cache.clear()
		self.locks = SettlementLockManager(cache=self.cache, lease_seconds=30, wait_seconds=0, poll_interval=0.01)

	def test_second_acquire_is_busy_until_release(self):
		first = self.locks.acquire(5)
		self.assertTrue(first.acquired)
		second = self.locks.acquire(5)
		self.assertFalse(second)
		self.locks.release(first)
		third = self.locks.acquire(5)
		self.assertTrue(third)
		self.locks.release(third)

	def test_leases_are_per_order(self):
		with self.locks.lease(1) as a, self.locks.lease(2) as b:
			self.assertTrue(a.acquired)
			self.assertTrue(b.acquired)

	def test_lease_released_on_success_and_error(self):
		with self.locks.lease(9) as lease:
			self.assertTrue(lease.acquired)
		self.assertIsNone(self.cache.get(self.locks.key_for(9)))

		with self.assertRaises(RuntimeError):
			with self.locks.lease(9):
				raise RuntimeError('boom')
		self.assertIsNone(self.cache.get(self.locks.key_for(9)))

	def test_busy_lease_does_not_release_holder(self):
		holder = self.locks.acquire(3)
		with self.locks.lease(3) as busy:
			self.assertFalse(busy.acquired)
		self.assertEqual(self.cache.get(self.locks.key_for(3)), holder.token)
		self.locks.release(holder)

	def test_expired_lease_does_not_delete_new_holder(self):
		stale = self.locks.acquire(4)
		self.cache.set(self.locks.key_for(4), 'someone-else', 30)
		self.locks.release(stale)
		self.assertEqual(self.cache.get(self.locks.key_for(4)), 'someone-else')
		self.assertFalse(stale.acquired)


class RedisSettlementLockManagerTests(SimpleTestCase):
	"""Leases held as redis-py locks."""

	def setUp(self):
		self.client = mock.Mock()
		self.lock = self.client.lock.return_value
		self.locks = RedisSettlementLockManager(self.client, lease_seconds=30, wait_seconds=0, poll_interval=0.01)

	def test_acquire_uses_token_and_lease_timeout(self):
		self.lock.acquire.return_value = True

		lease = self.locks.acquire(11)

		self.assertTrue(lease.acquired)
		self.assertIs(lease.handle, self.lock)
		self.assertEqual(self.client.lock.call_args.args[0], 'settlement-lease:11')
		self.assertEqual(self.client.lock.call_args.kwargs['timeout'], 30)
		self.lock.acquire.assert_called_once_with(blocking=False, blocking_timeout=None, token=lease.token)

	def test_busy_lock(self):
		self.lock.acquire.return_value = False
		with self.locks.lease(11) as lease:
			self.assertFalse(lease.acquired)
		self.lock.release.assert_not_called()

	def test_release_is_delegated_to_redis_lock(self):
		self.lock.acquire.return_value = True
		with self.locks.lease(11) as lease:
			pass
		self.lock.release.assert_called_once_with()
		self.assertFalse(lease.acquired)

	def test_expired_lock_is_not_an_error(self):
		self.lock.acquire.return_value = True
		self.lock.release.side_effect = LockNotOwnedError('not owned')

		with self.assertLogs('payments.locks', level='WARNING'):
			with self.locks.lease(11) as lease:
				pass
		self.assertFalse(lease.acquired)

	def test_default_manager_follows_redis_url(self):
		with override_settings(REDIS_URL=''):
			self.assertIs(type(default_lock_manager()), SettlementLockManager)

		redis_client.cache_clear()
		self.addCleanup(redis_client.cache_clear)
		with override_settings(REDIS_URL='redis://localhost:6379/3'):
			with mock.patch('payments.locks.redis.Redis.from_url') as from_url:
				manager = default_lock_manager()
		self.assertIsInstance(manager, RedisSettlementLockManager)
		from_url.assert_called_once_with('redis://localhost:6379/3')
		self.assertIs(manager.client, from_url.return_value)


@override_settings(VNPAY=TEST_VNPAY)
class PaymentUrlTests(SimpleTestCase):
	"""Outbound payment URL construction."""

	def make_order(self, **kwargs):
		defaults = {'id': 42, 'user_id': 1, 'final_amount': 150000, 'payment_status': ShopOrder.PAYMENT_UNPAID}
		defaults.update(kwargs)
		return ShopOrder(**defaults)

	def test_url_is_signed_and_carries_scaled_amount(self):
		now = datetime(2026, 1, 15, 3, 30, tzinfo=dt_timezone.utc)
		url, txn_ref = build_payment_url(self.make_order(), '10.0.0.1', bank_code='NCB', now=now)

		parts = urlsplit(url)
		self.assertEqual(f'{parts.scheme}://{parts.netloc}{parts.path}', TEST_VNPAY['URL'])
		params = dict(parse_qsl(parts.query))
		self.assertEqual(txn_ref, f'42_{int(now.timestamp())}')
		self.assertEqual(params['vnp_TxnRef'], txn_ref)
		self.assertEqual(params['vnp_Amount'], '15000000')
		self.assertEqual(params['vnp_CreateDate'], '20260115103000')
		self.assertEqual(params['vnp_BankCode'], 'NCB')
		self.assertEqual(params['vnp_ReturnUrl'], TEST_VNPAY['RETURN_URL'])
		self.assertTrue(verify_signature(params, secret=HASH_SECRET))

	def test_paid_order_is_rejected(self):
		with self.assertRaises(PaymentRequestError):
			build_payment_url(self.make_order(payment_status=ShopOrder.PAYMENT_PAID), '10.0.0.1')

	def test_amount_limits(self):
		with self.assertRaises(PaymentRequestError):
			build_payment_url(self.make_order(final_amount=9_999), '10.0.0.1')
		with self.assertRaises(PaymentRequestError):
			build_payment_url(self.make_order(final_amount=500_000_001), '10.0.0.1')


class FixtureHelperTests(TestCase):
	"""Sanity checks for the shared order fixtures."""

	def test_new_order_gets_unshipped_record(self):
		user = create_customer('fixture_customer')
		product = Product.objects.create(name='Tee')
		sku = create_sku(product, 'TEE-S', price=50000, stock=3)
		order = create_order(user, [(sku, 2)])
		self.assertEqual(order.final_amount, 100000)
		self.assertEqual(order.shipping.shipping_status, 'nodone')
		self.assertEqual(order.lines.count(), 1)
