"""Browser driver and session persistence."""

from __future__ import annotations

from xvps_renew.environment.browser_session import LaunchOptions, PlaywrightSession
from xvps_renew.environment.cookies import CookieRecord, CookieStore

__all__ = ["CookieRecord", "CookieStore", "LaunchOptions", "PlaywrightSession"]
