"""Ledger store contracts and their Mongo / in-memory implementations."""
