"""Version info for the listen sync packages."""

from __future__ import annotations

import importlib.metadata


def _get_version() -> str:
    try:
        return importlib.metadata.version("listen-sync")
    except importlib.metadata.PackageNotFoundError:
        return "0.1.0-dev"


__version__ = _get_version()
