"""DRF serializers for payment APIs."""

from rest_framework import serializers

from orders.models import ShopOrder
from .models import PaymentTransaction


class PaymentTransactionSerializer(serializers.ModelSerializer):
    """Full transaction view used by the order and staff listings."""

    order_id = serializers.ReadOnlyField(source='order.id')

    class Meta:
        model = PaymentTransaction
        fields = [
            'id',
            'order_id',
            'transaction_code',
            'payment_method',
            'amount',
            'status',
            'bank_code',
            'response_code',
            'transaction_info',
            'paid_at',
            'created_at',
        ]


class TransactionSummarySerializer(serializers.ModelSerializer):
    class Meta:
        model = PaymentTransaction
        fields = ['id', 'transaction_code', 'status', 'amount', 'payment_method', 'bank_code', 'paid_at']


class PaymentStatusSerializer(serializers.ModelSerializer):
    """Settlement state polled by the storefront after checkout."""

    order_id = serializers.ReadOnlyField(source='id')
    shipping_status = serializers.SerializerMethodField()
    transaction = serializers.SerializerMethodField()

    class Meta:
        model = ShopOrder
        fields = ['order_id', 'payment_status', 'paid_at', 'final_amount', 'shipping_status', 'transaction']

    def get_shipping_status(self, obj):
        shipping = getattr(obj, 'shipping', None)
        return shipping.shipping_status if shipping else None

    def get_transaction(self, obj):
        latest = obj.payment_transactions.order_by('-created_at', '-id').first()
        if latest is None:
            return None
        return TransactionSummarySerializer(latest).data


class CreatePaymentSerializer(serializers.Serializer):
    order_id = serializers.IntegerField(min_value=1)
    bank_code = serializers.CharField(required=False, allow_blank=True, max_length=20)
