"""Outbound notifications (webhook messages and file uploads)."""

from __future__ import annotations

from xvps_renew.notify.webhook import NullNotifier, WebhookNotifier, build_notifier

__all__ = ["NullNotifier", "WebhookNotifier", "build_notifier"]
