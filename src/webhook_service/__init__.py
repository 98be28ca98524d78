"""Webhook dispatch and UI element discovery service."""
