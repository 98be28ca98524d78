"""Discovery of interactive UI elements and webhook suggestions."""
from webhook_service.services.discovery.engine import DiscoveryEngine, resolve_snapshot
from webhook_service.services.discovery.monitor import DomMonitor

__all__ = ["DiscoveryEngine", "DomMonitor", "resolve_snapshot"]
