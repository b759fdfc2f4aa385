"""Discord-compatible webhook notifier.

Every send is best-effort: failures are logged and reported through the
boolean return value, never raised.  ``submit`` queues a send on a single
background worker so callers (the captcha solver's diagnostic uploads) do
not wait on the network.
"""

from __future__ import annotations

import logging
import mimetypes
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Optional

import requests

logger = logging.getLogger(__name__)

# Discord rejects message content longer than this.
MAX_CONTENT_CHARS = 2000


def _truncate(text: str) -> str:
    if len(text) <= MAX_CONTENT_CHARS:
        return text
    return text[: MAX_CONTENT_CHARS - 3] + "..."


class WebhookNotifier:
    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()
        self._executor: ThreadPoolExecutor | None = None
        # requests.Session is not thread-safe; the worker and the caller share it.
        self._session_lock = threading.Lock()

    def _post(self, what: str, **kwargs) -> bool:
        try:
            with self._session_lock:
                resp = self._session.post(self.url, timeout=self.timeout, **kwargs)
            resp.raise_for_status()
            return True
        except requests.RequestException as e:
            logger.warning("Webhook %s failed: %s", what, e)
            return False

    def send_message(self, text: str) -> bool:
        return self._post("message", json={"content": _truncate(text)})

    def send_bytes(
        self,
        filename: str,
        data: bytes,
        caption: str | None = None,
        content_type: str = "application/octet-stream",
    ) -> bool:
        payload = {"content": _truncate(caption)} if caption else None
        return self._post(
            f"upload of {filename}",
            data=payload,
            files={"file": (filename, data, content_type)},
        )

    def send_file(self, path: str | Path, caption: str | None = None) -> bool:
        path = Path(path)
        try:
            data = path.read_bytes()
        except OSError as e:
            logger.warning("Cannot read %s for upload: %s", path, e)
            return False
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return self.send_bytes(path.name, data, caption, content_type)

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        """Run ``fn(*args, **kwargs)`` on the background worker."""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="webhook")
        future = self._executor.submit(fn, *args, **kwargs)
        future.add_done_callback(_log_background_error)
        return future

    def close(self):
        """Wait for queued sends to finish."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        self._session.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def _log_background_error(future: Future):
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.warning("Background notification failed: %s", exc)


class NullNotifier:
    """Stand-in used when no webhook is configured."""

    def send_message(self, text: str) -> bool:
        logger.debug("No webhook configured, dropping message: %.80s", text)
        return False

    def send_bytes(self, filename: str, data: bytes, caption: str | None = None,
                   content_type: str = "application/octet-stream") -> bool:
        return False

    def send_file(self, path: str | Path, caption: str | None = None) -> bool:
        return False

    def submit(self, fn: Callable, *args, **kwargs) -> None:
        return None

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def build_notifier(url: str | None, timeout: float = 30.0):
    return WebhookNotifier(url, timeout=timeout) if url else NullNotifier()
