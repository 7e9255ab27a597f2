"""Detection of the Fly.io runtime environment."""

from __future__ import annotations

import os


def current_app_name() -> str | None:
    """Name of the app this process runs as, when running on Fly.io."""
    return os.environ.get("FLY_APP_NAME") or None


def running_on_fly() -> bool:
    return current_app_name() is not None
