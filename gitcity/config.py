"""
gitcity.config — YAML Configuration Loader
===========================================

Reads ``config.yaml`` for **infrastructure-only** settings (site identity,
admin logins, tracking origins, notification tuning).  Secrets and
connection strings never live here; they come from environment variables
(``.env`` is loaded by the API entrypoint).

Usage::

    from gitcity.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.base_url)          # "https://thegitcity.com"
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml

DEFAULT_TRACKING_ORIGINS: tuple[str, ...] = (
    "https://thegitcity.com",
    "https://www.thegitcity.com",
    "http://localhost:3000",
    "http://localhost:3001",
)


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class GitCityConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    site_name: str
    base_url: str
    email_from: str

    # Admin (GitHub logins allowed to manage sky ads)
    admin_logins: tuple[str, ...] = ()

    # Ad tracking
    tracking_origins: tuple[str, ...] = field(default=DEFAULT_TRACKING_ORIGINS)
    ad_rotation_interval_seconds: int = 60

    # Notifications
    notification_batch_window_minutes: int = 60

    def is_admin(self, login: str | None) -> bool:
        return bool(login) and login.lower() in self.admin_logins


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> GitCityConfig:
    """Read *path* and return a :class:`GitCityConfig` instance.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh)

    return GitCityConfig(
        site_name=raw["site_name"],
        base_url=str(raw["base_url"]).rstrip("/"),
        email_from=raw["email_from"],
        admin_logins=tuple(login.lower() for login in raw.get("admin_logins") or ()),
        tracking_origins=tuple(raw.get("tracking_origins") or DEFAULT_TRACKING_ORIGINS),
        ad_rotation_interval_seconds=int(raw.get("ad_rotation_interval_seconds", 60)),
        notification_batch_window_minutes=int(
            raw.get("notification_batch_window_minutes", 60)
        ),
    )
