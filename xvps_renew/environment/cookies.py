"""Authenticated-session cookie persistence.

The login step writes the panel cookies as a JSON list of
``{name, value, domain, path, secure}`` records; later runs load them to
skip the login form while the session is still alive.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CookieRecord:
    name: str
    value: str
    domain: str = ""
    path: str = "/"
    secure: bool = False

    @classmethod
    def from_browser(cls, cookie: dict) -> "CookieRecord":
        """Build from a Playwright ``context.cookies()`` entry."""
        return cls(
            name=cookie["name"],
            value=cookie["value"],
            domain=cookie.get("domain", ""),
            path=cookie.get("path", "/"),
            secure=bool(cookie.get("secure", False)),
        )

    def to_browser(self) -> dict:
        return asdict(self)

    def as_tuple(self) -> tuple[str, str, str, str, bool]:
        return (self.name, self.value, self.domain, self.path, self.secure)


def _parse(item) -> CookieRecord:
    if not isinstance(item, dict) or "name" not in item or "value" not in item:
        raise ValueError(f"not a cookie record: {item!r}")
    return CookieRecord(
        name=str(item["name"]),
        value=str(item["value"]),
        domain=str(item.get("domain") or ""),
        path=str(item.get("path") or "/"),
        secure=bool(item.get("secure", False)),
    )


class CookieStore:
    def __init__(self, path: str | Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.is_file()

    def save(self, records: list[CookieRecord]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump([asdict(r) for r in records], f, indent=4, ensure_ascii=False)
        logger.info("Saved %d cookies to %s", len(records), self.path)

    def load(self) -> list[CookieRecord]:
        """Read the records back in file order.

        Raises ValueError for a file that is not a list of cookie records.
        """
        with open(self.path, encoding="utf-8") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"{self.path} is not valid JSON: {e}") from e
        if not isinstance(data, list):
            raise ValueError(f"{self.path} does not hold a cookie list")
        return [_parse(item) for item in data]
