"""Credentials and site configuration.

Credentials come from the environment (``.env`` is loaded by the entry
point); everything about the target site lives in
``config/renewal_config.yaml``.  Both are validated with pydantic before
any browser or network work starts.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[1]
CONFIG_PATH = PROJECT_ROOT / "config" / "renewal_config.yaml"

# Environment variable -> Credentials field.
_ENV_KEYS = {
    "ID_VPS": "id_vps",
    "USERNAME": "username",
    "PASSWORD": "password",
    "TOTP_SECRET": "totp_secret",
    "DISCORD_WEBHOOK_URL": "webhook_url",
    "GEMINI_API_KEY": "gemini_api_key",
}


class ConfigurationError(Exception):
    """A required credential or config value is missing or malformed."""


class Credentials(BaseModel):
    id_vps: str = Field(min_length=1)
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    gemini_api_key: str = Field(min_length=1)
    totp_secret: Optional[str] = None
    webhook_url: Optional[str] = Field(default=None, pattern=r"^https?://")

    @property
    def has_totp(self) -> bool:
        return bool(self.totp_secret)


class UrlConfig(BaseModel):
    login: str
    panel_index: str
    two_factor_marker: str


class SelectorConfig(BaseModel):
    username: str
    password: str
    login_button: str
    totp_input: str
    totp_submit: str
    server_detail: str
    renew_button: str
    continue_button: str
    captcha_image: str
    captcha_input: str
    captcha_submit: str


class PhraseConfig(BaseModel):
    completed: str
    too_early: str


class TimeoutConfig(BaseModel):
    navigation_ms: int = 30000
    settle_ms: int = 10000
    classification_s: float = 60.0


class GeminiConfig(BaseModel):
    model: str = "gemini-2.5-flash"
    temperature: float = 0.0


class BrowserConfig(BaseModel):
    headless: bool = True
    locale: Optional[str] = None
    user_agent_url: Optional[str] = None
    video_dir: Optional[str] = None


class PathConfig(BaseModel):
    cookie_store: str = "cookies.json"
    report: str = "results/renewal_report.json"


class SiteConfig(BaseModel):
    urls: UrlConfig
    selectors: SelectorConfig
    phrases: PhraseConfig
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    gemini: GeminiConfig = Field(default_factory=GeminiConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    paths: PathConfig = Field(default_factory=PathConfig)


def _describe(err: ValidationError, names: Mapping[str, str] | None = None) -> str:
    parts = []
    for e in err.errors():
        loc = ".".join(str(p) for p in e["loc"])
        if names:
            loc = names.get(loc, loc)
        parts.append(f"{loc} ({e['msg']})")
    return ", ".join(parts)


def load_credentials(environ: Mapping[str, str] | None = None) -> Credentials:
    """Read and validate credentials from *environ* (default ``os.environ``).

    Empty strings count as missing.
    """
    environ = os.environ if environ is None else environ
    values = {}
    for env_key, field_name in _ENV_KEYS.items():
        value = environ.get(env_key)
        if value is not None and value.strip() == "":
            value = None
        if value is not None:
            values[field_name] = value
    try:
        return Credentials(**values)
    except ValidationError as e:
        env_names = {field_name: env_key for env_key, field_name in _ENV_KEYS.items()}
        raise ConfigurationError(f"Invalid credentials: {_describe(e, env_names)}") from e


def load_config(path: str | Path | None = None) -> SiteConfig:
    path = Path(path) if path else CONFIG_PATH
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise ConfigurationError(f"Config file not found: {path}") from e
    logger.debug("Loaded site config from %s", path)
    try:
        return SiteConfig(**raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid config {path}: {_describe(e)}") from e
