"""Parsed view of an inbound gateway notification (IPN or browser return)."""

from dataclasses import dataclass, field
from datetime import datetime

from .gateway import SUCCESS_CODE, order_id_from_txn_ref, parse_pay_date, response_message
from .reconcile import to_store_amount


@dataclass(frozen=True)
class GatewayNotification:
    txn_ref: str
    order_id: int | None
    response_code: str
    transaction_status: str
    amount: int | None
    transaction_no: str
    bank_code: str = ''
    bank_tran_no: str = ''
    card_type: str = ''
    pay_date: datetime | None = None
    order_info: str = ''
    params: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_params(cls, params: dict) -> 'GatewayNotification':
        def text(key):
            return str(params.get(key) or '').strip()

        txn_ref = text('vnp_TxnRef')
        return cls(
            txn_ref=txn_ref,
            order_id=order_id_from_txn_ref(txn_ref),
            response_code=text('vnp_ResponseCode'),
            transaction_status=text('vnp_TransactionStatus'),
            amount=to_store_amount(params.get('vnp_Amount')),
            transaction_no=text('vnp_TransactionNo'),
            bank_code=text('vnp_BankCode'),
            bank_tran_no=text('vnp_BankTranNo'),
            card_type=text('vnp_CardType'),
            pay_date=parse_pay_date(text('vnp_PayDate')),
            order_info=text('vnp_OrderInfo'),
            params=dict(params),
        )

    @property
    def is_success(self) -> bool:
        if self.response_code != SUCCESS_CODE:
            return False
        return self.transaction_status in ('', SUCCESS_CODE)

    @property
    def transaction_code(self) -> str:
        """Idempotency key; failures without a gateway number fall back to the reference."""
        if self.transaction_no and self.transaction_no != '0':
            return self.transaction_no
        prefix = 'TXN' if self.is_success else 'FAILED'
        return f"{prefix}-{self.txn_ref}"

    @property
    def message(self) -> str:
        return response_message(self.response_code)

    def audit_info(self, processed_at: datetime) -> dict:
        info = {
            'vnp_TxnRef': self.txn_ref,
            'vnp_TransactionNo': self.transaction_no,
            'vnp_ResponseCode': self.response_code,
            'vnp_TransactionStatus': self.transaction_status,
            'vnp_BankCode': self.bank_code,
            'vnp_BankTranNo': self.bank_tran_no,
            'vnp_CardType': self.card_type,
            'vnp_PayDate': self.params.get('vnp_PayDate', ''),
            'vnp_Amount': self.amount,
            'vnp_OrderInfo': self.order_info,
            'full_ipn_data': self.params,
            'processed_at': processed_at.isoformat(),
        }
        if not self.is_success:
            info['error_message'] = self.message
        return info
