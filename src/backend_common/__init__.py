"""Shared infrastructure for aiohttp services."""
