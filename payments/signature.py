"""HMAC signing of gateway parameters.

The same canonical message is used for outbound payment URLs and for inbound
notifications (IPN and browser return), so both sides stay in lock-step.
"""

import hashlib
import hmac
from urllib.parse import quote_plus

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

SIGNATURE_FIELD = 'vnp_SecureHash'
SIGNATURE_TYPE_FIELD = 'vnp_SecureHashType'
_UNSIGNED_FIELDS = frozenset({SIGNATURE_FIELD, SIGNATURE_TYPE_FIELD})


def hash_secret() -> str:
    secret = (getattr(settings, 'VNPAY', None) or {}).get('HASH_SECRET')
    if not secret:
        raise ImproperlyConfigured("VNPAY['HASH_SECRET'] setting is required to sign gateway messages")
    return secret


def canonical_message(params: dict) -> str:
    """Sorted, URL-encoded ``key=value`` pairs joined with ``&``.

    The signature fields themselves are never part of the message.
    """
    pairs = sorted(
        (str(key), '' if value is None else str(value))
        for key, value in params.items()
        if key not in _UNSIGNED_FIELDS
    )
    return '&'.join(f"{quote_plus(key)}={quote_plus(value)}" for key, value in pairs)


def sign(params: dict, secret: str | None = None) -> str:
    """Return the hex HMAC-SHA512 of the canonical message."""
    key = (secret or hash_secret()).encode('utf-8')
    return hmac.new(key, canonical_message(params).encode('utf-8'), hashlib.sha512).hexdigest()


def verify_signature(params: dict, secret: str | None = None) -> bool:
    received = str(params.get(SIGNATURE_FIELD) or '').strip().lower()
    if not received:
        return False
    expected = sign(params, secret=secret)
    return hmac.compare_digest(expected.encode('ascii'), received.encode('utf-8', 'replace'))
