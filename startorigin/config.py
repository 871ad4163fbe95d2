"""
startorigin.config — YAML Configuration Loader
===============================================

Reads ``config.yaml`` for **infrastructure-only** settings (site identity,
frontend URL, session-provider endpoint, chat refresh timing).  Secrets and
the database URL come from the environment instead; business constants
live in :mod:`startorigin.constants`.

Usage::

    from startorigin.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.site_name)         # "StartOrigin"
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass(frozen=True, slots=True)
class StartOriginConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    site_name: str
    frontend_url: str

    # API
    api_port: int

    # Session provider (sign-up, sign-in, OAuth code exchange)
    auth_provider_url: str

    # Chat view timing
    chat_refresh_delay_seconds: float = 0.5
    search_debounce_ms: int = 300

    # Fallback alias map: main username -> aliases
    static_aliases: dict[str, list[str]] = field(default_factory=dict)


def load_config(path: str | Path = "config.yaml") -> StartOriginConfig:
    """Read *path* and return a :class:`StartOriginConfig` instance.

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
        raw: dict = yaml.safe_load(fh) or {}

    aliases = raw.get("static_aliases") or {}
    return StartOriginConfig(
        site_name=raw["site_name"],
        frontend_url=str(raw["frontend_url"]).rstrip("/"),
        api_port=int(raw["api_port"]),
        auth_provider_url=str(raw["auth_provider_url"]).rstrip("/"),
        chat_refresh_delay_seconds=float(raw.get("chat_refresh_delay_seconds", 0.5)),
        search_debounce_ms=int(raw.get("search_debounce_ms", 300)),
        static_aliases={
            str(main).lower(): [str(a).lower() for a in (names or [])]
            for main, names in aliases.items()
        },
    )
