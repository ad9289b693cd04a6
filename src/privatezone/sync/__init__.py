"""Reconciliation of provider records into the local store."""
