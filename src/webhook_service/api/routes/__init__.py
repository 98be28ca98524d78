"""Route modules."""

from . import assignments, discovery, executions, webhooks

__all__ = ["assignments", "discovery", "executions", "webhooks"]
