"""Playwright browser session used by the renewal workflow.

All Playwright calls are **synchronous**.  The browser context (and with it
the page) is created lazily so that video recording, which Playwright only
supports from context creation, can still be switched on after launch.
"""

from __future__ import annotations

import base64
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol
from urllib.parse import unquote_to_bytes, urlparse

import requests

from xvps_renew.environment.cookies import CookieRecord
from xvps_renew.solver.image_transforms import ChallengeImage

logger = logging.getLogger(__name__)


class BrowserSession(Protocol):
    def navigate(self, url: str) -> None: ...
    def fill(self, selector: str, text: str) -> None: ...
    def click(self, selector: str) -> None: ...
    def wait_for_navigation(self) -> None: ...
    def wait_for_url(self, predicate: Callable[[str], bool]) -> bool: ...
    def current_url(self) -> str: ...
    def content(self) -> str: ...
    def capture_image(self, selector: str) -> ChallengeImage: ...
    def start_recording(self, directory: str | Path) -> Path: ...
    def stop_recording(self) -> Optional[Path]: ...
    def cookies(self) -> list[CookieRecord]: ...
    def add_cookies(self, records: list[CookieRecord]) -> None: ...
    def close(self) -> None: ...


@dataclass
class LaunchOptions:
    headless: bool = True
    navigation_timeout_ms: int = 30000
    settle_timeout_ms: int = 10000
    locale: Optional[str] = None
    user_agent: Optional[str] = None
    viewport: tuple[int, int] = (1280, 800)


def _get_playwright_proxy() -> dict | None:
    """Build Playwright proxy config from HTTP_PROXY / HTTPS_PROXY, if set."""
    proxy_url = os.environ.get("HTTP_PROXY") or os.environ.get("HTTPS_PROXY") or ""
    if not proxy_url:
        return None
    parsed = urlparse(proxy_url)
    if not parsed.hostname:
        return None
    proxy: dict = {"server": f"http://{parsed.hostname}:{parsed.port}"}
    if parsed.username:
        proxy["username"] = parsed.username
    if parsed.password:
        proxy["password"] = parsed.password
    return proxy


def fetch_latest_user_agent(url: str, timeout: float = 10.0) -> Optional[str]:
    """Latest desktop Chrome user agent from a ``{"chrome": {...}}`` header dump.

    Returns None (and logs) on any failure; the browser default is fine.
    """
    try:
        resp = requests.get(url, timeout=timeout)
        resp.raise_for_status()
        headers = resp.json().get("chrome", {})
    except (requests.RequestException, ValueError) as e:
        logger.warning("Could not fetch user agent from %s: %s", url, e)
        return None
    for key, value in headers.items():
        if key.lower() == "user-agent" and value:
            return value
    logger.warning("No user-agent entry in %s", url)
    return None


def decode_data_url(url: str) -> ChallengeImage:
    """Decode a ``data:<mime>[;base64],<payload>`` image URL."""
    if not url.startswith("data:") or "," not in url:
        raise ValueError(f"not a data URL: {url[:40]!r}")
    header, payload = url[5:].split(",", 1)
    params = header.split(";")
    mime_type = params[0] or "text/plain"
    if "base64" in params[1:]:
        data = base64.b64decode(payload)
    else:
        data = unquote_to_bytes(payload)
    return ChallengeImage(data=data, mime_type=mime_type)


class PlaywrightSession:
    """One Chromium browser, one context, one page."""

    def __init__(self, options: LaunchOptions | None = None):
        self.options = options or LaunchOptions()
        self._playwright = None
        self.browser = None
        self.context = None
        self.page = None
        self._video_dir: Path | None = None

    @classmethod
    def launch(cls, options: LaunchOptions | None = None) -> "PlaywrightSession":
        from playwright.sync_api import sync_playwright

        session = cls(options)
        launch_kwargs: dict = {"headless": session.options.headless}
        proxy = _get_playwright_proxy()
        if proxy:
            launch_kwargs["proxy"] = proxy
            logger.info("Using HTTP proxy for browser: %s", proxy["server"])

        session._playwright = sync_playwright().start()
        try:
            session.browser = session._playwright.chromium.launch(**launch_kwargs)
        except Exception:
            session._playwright.stop()
            raise
        return session

    def _ensure_page(self):
        if self.page is not None:
            return self.page
        width, height = self.options.viewport
        ctx_kwargs: dict = {"viewport": {"width": width, "height": height}}
        if self.options.locale:
            ctx_kwargs["locale"] = self.options.locale
        if self.options.user_agent:
            ctx_kwargs["user_agent"] = self.options.user_agent
        if self._video_dir is not None:
            ctx_kwargs["record_video_dir"] = str(self._video_dir)
        self.context = self.browser.new_context(**ctx_kwargs)
        self.page = self.context.new_page()
        self.page.set_default_timeout(self.options.navigation_timeout_ms)
        return self.page

    # -- recording ---------------------------------------------------------

    def start_recording(self, directory: str | Path) -> Path:
        if self.page is not None:
            raise RuntimeError("recording must start before the first page is opened")
        self._video_dir = Path(directory)
        self._video_dir.mkdir(parents=True, exist_ok=True)
        self._ensure_page()
        logger.info("Recording browser video to %s", self._video_dir)
        return self._video_dir

    def stop_recording(self) -> Optional[Path]:
        """Finish the video and return its path.

        Playwright only writes the file once the context closes, so this
        also ends the page.
        """
        if self._video_dir is None or self.page is None:
            return None
        video = self.page.video
        self.context.close()
        self.context = None
        self.page = None
        self._video_dir = None
        if video is None:
            return None
        return Path(video.path())

    # -- navigation --------------------------------------------------------

    def navigate(self, url: str, wait_until: str = "networkidle") -> None:
        logger.debug("Navigating to %s", url)
        self._ensure_page().goto(
            url, wait_until=wait_until, timeout=self.options.navigation_timeout_ms,
        )

    def fill(self, selector: str, text: str) -> None:
        self._ensure_page().fill(selector, text)

    def click(self, selector: str) -> None:
        logger.debug("Clicking %s", selector)
        self._ensure_page().click(selector)

    def wait_for_navigation(self, state: str = "networkidle") -> None:
        self._ensure_page().wait_for_load_state(
            state, timeout=self.options.settle_timeout_ms,
        )

    def wait_for_url(self, predicate: Callable[[str], bool]) -> bool:
        """Block until the page URL satisfies *predicate*.

        Returns False when the navigation timeout runs out first.
        """
        from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

        try:
            self._ensure_page().wait_for_url(
                predicate, timeout=self.options.navigation_timeout_ms,
            )
        except PlaywrightTimeoutError:
            logger.debug("URL still %s after waiting", self.current_url())
            return False
        return True

    def current_url(self) -> str:
        return self._ensure_page().url

    def content(self) -> str:
        return self._ensure_page().content()

    def capture_image(self, selector: str) -> ChallengeImage:
        """Grab the image under *selector*.

        ``data:`` sources are decoded as served; anything else falls back
        to an element screenshot.
        """
        element = self._ensure_page().wait_for_selector(selector, state="visible")
        src = element.get_attribute("src") or ""
        if src.startswith("data:"):
            return decode_data_url(src)
        return ChallengeImage(data=element.screenshot(type="png"), mime_type="image/png")

    # -- cookies -----------------------------------------------------------

    def cookies(self) -> list[CookieRecord]:
        self._ensure_page()
        return [CookieRecord.from_browser(c) for c in self.context.cookies()]

    def add_cookies(self, records: list[CookieRecord]) -> None:
        # Playwright needs a domain (or url) on every cookie.
        usable = [r for r in records if r.domain]
        if len(usable) < len(records):
            logger.warning("Skipping %d cookies without a domain", len(records) - len(usable))
        self._ensure_page()
        self.context.add_cookies([r.to_browser() for r in usable])

    # -- teardown ----------------------------------------------------------

    def close(self) -> None:
        for name, closer in (
            ("context", self.context),
            ("browser", self.browser),
            ("playwright", self._playwright),
        ):
            if closer is None:
                continue
            try:
                if name == "playwright":
                    closer.stop()
                else:
                    closer.close()
            except Exception as e:
                logger.warning("Error closing %s: %s", name, e)
        self.context = self.browser = self._playwright = self.page = None

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
