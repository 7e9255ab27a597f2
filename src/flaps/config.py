"""YAML settings loading → ClientSettings."""

from __future__ import annotations

import os
from pathlib import Path

import yaml

from flaps import env
from flaps.models import ClientSettings

PUBLIC_BASE_URL = "https://api.machines.dev"
INTERNAL_BASE_URL = "http://_api.internal:4280"


def default_base_url() -> str:
    """Base URL when none is configured: env override, then internal, then public."""
    override = os.environ.get("FLY_FLAPS_BASE_URL")
    if override:
        return override
    if env.running_on_fly():
        return INTERNAL_BASE_URL
    return PUBLIC_BASE_URL


def load_settings(path: str | Path | None = None) -> ClientSettings:
    """Load client settings from a YAML file, filling gaps from the environment.

    Resolution order for path:
    1. Explicit `path` argument
    2. FLAPS_CONFIG_PATH env var
    3. No file: settings come from the environment alone

    Unset fields fall back to FLY_API_TOKEN, FLY_APP_NAME and FLY_FLAPS_BASE_URL.
    """
    if path is None:
        path = os.environ.get("FLAPS_CONFIG_PATH")

    data: dict = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        loaded = yaml.safe_load(config_path.read_text())
        if loaded is not None and not isinstance(loaded, dict):
            raise ValueError(
                f"Config file must contain a YAML mapping, got {type(loaded).__name__}"
            )
        data = loaded or {}

    settings = ClientSettings(**data)
    updates: dict[str, str] = {}
    if not settings.auth_token and os.environ.get("FLY_API_TOKEN"):
        updates["auth_token"] = os.environ["FLY_API_TOKEN"]
    if settings.app_name is None and env.current_app_name():
        updates["app_name"] = env.current_app_name()
    if settings.base_url is None and os.environ.get("FLY_FLAPS_BASE_URL"):
        updates["base_url"] = os.environ["FLY_FLAPS_BASE_URL"]
    return settings.model_copy(update=updates)
