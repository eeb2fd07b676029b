"""Calls, demo sessions and the webhook event ledger."""
