"""Shared models, utilities and database access for Kintsugi services."""
