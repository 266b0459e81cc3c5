from __future__ import annotations

from leadauth.core.notifications.poller import NotificationPoller

__all__ = ["NotificationPoller"]
