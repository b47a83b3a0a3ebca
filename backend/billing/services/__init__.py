"""Billing domain services: ledger, reconciliation, gateways and webhook processing."""
