"""Ledger and provider account history endpoints."""
from __future__ import annotations

import logging

from django.core.exceptions import ObjectDoesNotExist
from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView
from rest_framework.viewsets import ReadOnlyModelViewSet

from billing.models import TokenTransaction
from billing.pagination import TokenLedgerPagination
from billing.serializers import TokenTransactionSerializer
from billing.services.gateway import PaymentGatewayError, get_payment_gateway

logger = logging.getLogger(__name__)


class UserTokenTransactionViewSet(ReadOnlyModelViewSet):
    serializer_class = TokenTransactionSerializer
    permission_classes = [IsAuthenticated]
    pagination_class = TokenLedgerPagination

    def get_queryset(self):
        queryset = TokenTransaction.objects.filter(user=self.request.user)
        transaction_type = self.request.query_params.get("type")
        if transaction_type:
            queryset = queryset.filter(type=transaction_type.upper())
        return queryset.order_by("-created_at", "-id")


class _GatewayAccountView(APIView):
    """Base for read-only views backed by the gateway's optional account group."""

    permission_classes = [IsAuthenticated]
    operation = ""
    result_key = ""

    def fetch(self, gateway, customer_id):
        raise NotImplementedError

    def get(self, request):
        try:
            customer_id = request.user.subscription.provider_customer_id
        except ObjectDoesNotExist:
            customer_id = ""

        gateway = get_payment_gateway()
        if not customer_id or not gateway.supports_account_history:
            return Response({self.result_key: []})

        try:
            items = self.fetch(gateway, customer_id)
        except PaymentGatewayError as exc:
            logger.warning("Unable to load %s for user %s: %s", self.operation, request.user.pk, exc)
            return Response({"detail": "Payment provider unavailable."}, status=status.HTTP_502_BAD_GATEWAY)
        return Response({self.result_key: items})


class BillingHistoryView(_GatewayAccountView):
    operation = "billing history"
    result_key = "invoices"

    def fetch(self, gateway, customer_id):
        return gateway.get_billing_history(customer_id)


class PaymentMethodListView(_GatewayAccountView):
    operation = "payment methods"
    result_key = "payment_methods"

    def fetch(self, gateway, customer_id):
        return gateway.get_payment_methods(customer_id)
