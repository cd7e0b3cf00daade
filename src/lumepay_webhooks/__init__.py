"""Merchant webhook delivery service for payment-intent events."""

__version__ = "0.1.0"
