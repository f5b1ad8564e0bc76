"""Payment API views.

Gateway-facing endpoints (IPN webhook and browser return) are unauthenticated;
their authenticity comes from the gateway signature. The remaining endpoints
are read-only queries and payment URL creation for signed-in customers.
"""

import logging
from urllib.parse import urlencode

from django.http import HttpResponseRedirect
from django.shortcuts import get_object_or_404
from django.views.decorators.csrf import csrf_exempt
from django_filters.rest_framework import DjangoFilterBackend
from rest_framework import generics
from rest_framework.decorators import api_view, authentication_classes, permission_classes
from rest_framework.permissions import AllowAny, IsAdminUser, IsAuthenticated
from rest_framework.response import Response

from core.pagination import StandardResultsSetPagination
from orders.models import ShopOrder

from .filters import PaymentTransactionFilter
from .gateway import PaymentRequestError, build_payment_url, gateway_config, order_id_from_txn_ref, response_message
from .models import PaymentTransaction
from .reconcile import to_store_amount
from .results import IPN_UNKNOWN_ERROR, Outcome
from .serializers import CreatePaymentSerializer, PaymentStatusSerializer, PaymentTransactionSerializer
from .services import REDIRECT, WEBHOOK, SettlementCoordinator

logger = logging.getLogger(__name__)


def get_coordinator() -> SettlementCoordinator:
    return SettlementCoordinator()


def _gateway_params(request) -> dict:
    params = request.query_params.dict()
    if request.method == 'POST' and hasattr(request.data, 'dict'):
        params.update(request.data.dict())
    elif request.method == 'POST' and isinstance(request.data, dict):
        params.update(request.data)
    return params


def _client_ip(request) -> str:
    forwarded = request.META.get('HTTP_X_FORWARDED_FOR', '')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR', '') or '127.0.0.1'


def _visible_orders(user):
    """Staff see every order; customers only their own."""
    if user.is_staff:
        return ShopOrder.objects.all()
    return ShopOrder.objects.filter(user=user)


@csrf_exempt
@api_view(['GET', 'POST'])
@authentication_classes([])
@permission_classes([AllowAny])
def vnpay_ipn(request):
    """Server-to-server payment notification.

    Always answers HTTP 200 with ``{"RspCode", "Message"}``; the code tells the
    gateway whether to redeliver.
    """
    try:
        result = get_coordinator().settle(_gateway_params(request), channel=WEBHOOK)
    except Exception:
        logger.exception("IPN processing crashed")
        code, message = IPN_UNKNOWN_ERROR
        return Response({'RspCode': code, 'Message': message})
    return Response(result.ipn_response())


@csrf_exempt
@api_view(['GET'])
@authentication_classes([])
@permission_classes([AllowAny])
def vnpay_return(request):
    """Browser return from the gateway.

    Settles the order when the IPN has not done it yet, then redirects to the
    storefront with the order's current state for display.
    """
    params = _gateway_params(request)
    coordinator = get_coordinator()
    try:
        result = coordinator.settle(params, channel=REDIRECT)
        outcome = result.outcome
        order_id = result.order_id
    except Exception:
        logger.exception("Browser return processing crashed")
        outcome = Outcome.UNKNOWN_ERROR
        order_id = order_id_from_txn_ref(params.get('vnp_TxnRef'))

    response_code = str(params.get('vnp_ResponseCode') or '')
    query = {
        'order_id': order_id if order_id is not None else order_id_from_txn_ref(params.get('vnp_TxnRef')) or '',
        'amount': to_store_amount(params.get('vnp_Amount')) or '',
        'response_code': response_code,
        'message': response_message(response_code),
    }
    if outcome == Outcome.INVALID_SIGNATURE:
        query['payment_status'] = 'invalid'
    else:
        order = coordinator.current_order(order_id)
        query['payment_status'] = order.payment_status if order else 'unknown'

    target = gateway_config()['STOREFRONT_RESULT_URL']
    separator = '&' if '?' in target else '?'
    return HttpResponseRedirect(f"{target}{separator}{urlencode(query)}")


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def create_payment_url(request):
    """Return a signed gateway URL for one of the customer's unpaid orders."""
    serializer = CreatePaymentSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    order = get_object_or_404(_visible_orders(request.user), pk=serializer.validated_data['order_id'])

    try:
        url, txn_ref = build_payment_url(
            order,
            _client_ip(request),
            bank_code=serializer.validated_data.get('bank_code') or None,
        )
    except PaymentRequestError as e:
        return Response({'detail': str(e)}, status=400)

    return Response({'payment_url': url, 'order_id': order.pk, 'txn_ref': txn_ref})


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def payment_status_view(request, order_id: int):
    """Return payment status and latest transaction of a single order."""
    order = get_object_or_404(_visible_orders(request.user).select_related('shipping'), pk=order_id)
    return Response(PaymentStatusSerializer(order).data)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def order_transactions_view(request, order_id: int):
    """List all gateway transactions of an order, newest first."""
    order = get_object_or_404(_visible_orders(request.user), pk=order_id)
    transactions = order.payment_transactions.order_by('-created_at', '-id')
    return Response(PaymentTransactionSerializer(transactions, many=True).data)


class TransactionListView(generics.ListAPIView):
    """Staff-only listing of every gateway transaction.

    Supports filters: `status`, `payment_method`, `from_date`, `to_date`.
    """

    permission_classes = [IsAdminUser]
    serializer_class = PaymentTransactionSerializer
    pagination_class = StandardResultsSetPagination
    filter_backends = [DjangoFilterBackend]
    filterset_class = PaymentTransactionFilter
    queryset = PaymentTransaction.objects.select_related('order').order_by('-created_at', '-id')
