from django.urls import path

from . import views

app_name = 'payments'
urlpatterns = [
    path('vnpay/create/', views.create_payment_url, name='vnpay_create'),
    path('vnpay/ipn/', views.vnpay_ipn, name='vnpay_ipn'),
    path('vnpay/return/', views.vnpay_return, name='vnpay_return'),
    path('orders/<int:order_id>/status/', views.payment_status_view, name='payment_status'),
    path('orders/<int:order_id>/transactions/', views.order_transactions_view, name='order_transactions'),
    path('transactions/', views.TransactionListView.as_view(), name='transaction_list'),
]
