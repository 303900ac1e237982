"""Billing store: table definitions and repository helpers."""
