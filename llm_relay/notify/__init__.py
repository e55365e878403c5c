"""
Notifications

Best-effort operator alerts (abuse thresholds).
"""

from .sinks import LogNotifier, WebhookNotifier, create_notifier

__all__ = ["LogNotifier", "WebhookNotifier", "create_notifier"]
