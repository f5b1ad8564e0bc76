"""VNPay gateway helpers: configuration, payment URLs and response codes."""

import logging
from datetime import datetime
from urllib.parse import quote_plus
from zoneinfo import ZoneInfo

from django.conf import settings
from django.utils import timezone

from .reconcile import to_gateway_amount
from .signature import SIGNATURE_FIELD, canonical_message, sign

logger = logging.getLogger(__name__)

PAY_DATE_FORMAT = '%Y%m%d%H%M%S'
SUCCESS_CODE = '00'

RESPONSE_MESSAGES = {
    '00': 'Transaction successful',
    '07': 'Amount debited. Transaction flagged as suspicious (possible fraud or unusual activity).',
    '09': 'Card or account is not registered for internet banking.',
    '10': 'Card or account verification failed more than 3 times.',
    '11': 'Payment window expired.',
    '12': 'Card or account is locked.',
    '13': 'Wrong transaction OTP.',
    '24': 'Customer cancelled the transaction.',
    '51': 'Insufficient account balance.',
    '65': 'Account exceeded its daily transaction limit.',
    '75': 'Paying bank is under maintenance.',
    '79': 'Wrong payment password entered too many times.',
    '99': 'Unknown error.',
}

_DEFAULTS = {
    'TMN_CODE': '',
    'HASH_SECRET': '',
    'URL': 'https://sandbox.vnpayment.vn/paymentv2/vpcpay.html',
    'RETURN_URL': '',
    'VERSION': '2.1.0',
    'COMMAND': 'pay',
    'CURR_CODE': 'VND',
    'LOCALE': 'vn',
    'ORDER_TYPE': 'other',
    'TIMEZONE': 'Asia/Ho_Chi_Minh',
    'MIN_AMOUNT': 10_000,
    'MAX_AMOUNT': 500_000_000,
    'STOREFRONT_RESULT_URL': '/payment/result',
}


class PaymentRequestError(Exception):
    """The order cannot be sent to the gateway."""


def gateway_config() -> dict:
    return {**_DEFAULTS, **(getattr(settings, 'VNPAY', None) or {})}


def gateway_tz() -> ZoneInfo:
    return ZoneInfo(gateway_config()['TIMEZONE'])


def response_message(code: str) -> str:
    return RESPONSE_MESSAGES.get(str(code or ''), RESPONSE_MESSAGES['99'])


def make_txn_ref(order_id, now=None) -> str:
    """``<order_id>_<unix timestamp>``; a new reference for every attempt."""
    now = now or timezone.now()
    return f"{order_id}_{int(now.timestamp())}"


def order_id_from_txn_ref(txn_ref) -> int | None:
    head = str(txn_ref or '').split('_', 1)[0].strip()
    if not (head.isascii() and head.isdecimal()):
        return None
    return int(head)


def parse_pay_date(value) -> datetime | None:
    """Parse ``YYYYMMDDHHMMSS`` in the gateway time zone into an aware datetime."""
    if not value:
        return None
    try:
        naive = datetime.strptime(str(value), PAY_DATE_FORMAT)
    except ValueError:
        return None
    return naive.replace(tzinfo=gateway_tz())


def build_payment_url(order, client_ip: str, *, bank_code: str | None = None,
                      return_url: str | None = None, now=None) -> tuple[str, str]:
    """Return ``(payment_url, txn_ref)`` for redirecting the customer to the gateway."""
    conf = gateway_config()
    if order.payment_status == order.PAYMENT_PAID:
        raise PaymentRequestError('Order has already been paid.')
    amount = int(order.final_amount)
    if amount < conf['MIN_AMOUNT'] or amount > conf['MAX_AMOUNT']:
        raise PaymentRequestError(
            f"Amount must be between {conf['MIN_AMOUNT']} and {conf['MAX_AMOUNT']}."
        )

    now = now or timezone.now()
    txn_ref = make_txn_ref(order.pk, now)
    params = {
        'vnp_Version': conf['VERSION'],
        'vnp_TmnCode': conf['TMN_CODE'],
        'vnp_Amount': to_gateway_amount(amount),
        'vnp_Command': conf['COMMAND'],
        'vnp_CreateDate': now.astimezone(gateway_tz()).strftime(PAY_DATE_FORMAT),
        'vnp_CurrCode': conf['CURR_CODE'],
        'vnp_IpAddr': client_ip or '127.0.0.1',
        'vnp_Locale': conf['LOCALE'],
        'vnp_OrderInfo': f"Payment for order #{order.pk}",
        'vnp_OrderType': conf['ORDER_TYPE'],
        'vnp_ReturnUrl': return_url or conf['RETURN_URL'],
        'vnp_TxnRef': txn_ref,
    }
    if bank_code:
        params['vnp_BankCode'] = bank_code

    query = canonical_message(params)
    secure_hash = sign(params, secret=conf['HASH_SECRET'] or None)
    url = f"{conf['URL']}?{query}&{SIGNATURE_FIELD}={quote_plus(secure_hash)}"

    logger.info("Payment URL generated order=%s txn_ref=%s amount=%s user=%s",
                order.pk, txn_ref, amount, order.user_id)
    return url, txn_ref
