"""Notification delivery reliability: attempt tracking, per-channel circuit breakers and retry scheduling."""

__version__ = "0.1.0"
