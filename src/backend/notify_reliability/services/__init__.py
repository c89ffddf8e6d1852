"""Notification delivery services."""
