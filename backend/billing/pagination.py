"""Pagination for the token ledger endpoints."""
from __future__ import annotations

from django.conf import settings
from rest_framework.pagination import PageNumberPagination


class TokenLedgerPagination(PageNumberPagination):
    """Page-number pagination whose sizes come from ``BILLING_LEDGER_*`` settings."""

    page_size_query_param = "page_size"

    def __init__(self):
        self.page_size = getattr(settings, "BILLING_LEDGER_PAGE_SIZE", 20)
        self.max_page_size = getattr(settings, "BILLING_LEDGER_MAX_PAGE_SIZE", 100)
