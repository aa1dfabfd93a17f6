"""Pytest bootstrap: put the local src packages on `sys.path`.

Lets the test suites run from a checkout without installing the project:
`packages/listen_sync/src` and `services/sync_hub/src` are prepended so that
`listen_sync` and `listen_sync_hub` import from the working tree.
"""

from __future__ import annotations

from pathlib import Path
import sys
from typing import Iterable


def _extend_sys_path(paths: Iterable[Path]) -> None:
    """Prepend directories to `sys.path`, skipping ones already present.

    Args:
        paths: Directories to add.
    """

    for p in paths:
        str_path = str(p)
        if str_path not in sys.path:
            sys.path.insert(0, str_path)


def _collect_src_paths(root: Path) -> list[Path]:
    """Collect the src directories of the local packages.

    Args:
        root: Repository root.

    Returns:
        Existing src directories.
    """

    candidates: list[Path] = [
        root / "services" / "sync_hub" / "src",
        root / "packages" / "listen_sync" / "src",
    ]
    return [p for p in candidates if p.exists()]


# Runs when pytest imports this conftest
_extend_sys_path(_collect_src_paths(Path(__file__).parent.resolve()))
