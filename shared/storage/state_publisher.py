"""
Atomic JSON snapshot writer.

Every write lands in a temp file in the target directory, is fsynced, then
replaces the target, so a crash mid-write leaves the previous snapshot
intact.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

from shared.logging.logger import get_logger

log = get_logger("shared.state_publisher")


class SnapshotWriter:
    """
    Atomic snapshot writer with an optional mirror path (e.g. a dashboard
    checkout or a backup mount).
    """

    ENV_MIRROR_KEY = "HOLOTRACKER_STATE_MIRROR"

    def __init__(
        self,
        path: Path | str,
        mirror_path: Path | str | None = None,
    ):
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

        env_mirror = os.getenv(self.ENV_MIRROR_KEY)
        mirror = mirror_path or env_mirror
        self._mirror_path = Path(mirror) if mirror else None

        if self._mirror_path:
            self._mirror_path.parent.mkdir(parents=True, exist_ok=True)
            log.info(f"State snapshot mirror: {self._mirror_path}")

    # ------------------------------------------------------------------
    # Atomic writer
    # ------------------------------------------------------------------

    @staticmethod
    def _write_atomic(path: Path, payload: Any) -> None:
        serialized = json.dumps(payload, indent=2)
        path.parent.mkdir(parents=True, exist_ok=True)

        with tempfile.NamedTemporaryFile(
            "w", dir=path.parent, delete=False, encoding="utf-8"
        ) as tmp:
            tmp.write(serialized)
            tmp.flush()
            os.fsync(tmp.fileno())
            temp_path = Path(tmp.name)

        temp_path.replace(path)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def path(self) -> Path:
        return self._path

    def write(self, payload: Any) -> None:
        """
        Persist the snapshot. Raises OSError if the primary write fails;
        mirror failures are only logged.
        """
        self._write_atomic(self._path, payload)

        if not self._mirror_path:
            return

        try:
            self._write_atomic(self._mirror_path, payload)
        except OSError as e:
            log.warning(f"Failed to mirror state snapshot: {e}")

    def read(self) -> Optional[Any]:
        """
        Load the last snapshot. Returns None when no snapshot exists or the
        file is not valid JSON (logged).
        """
        if not self._path.exists():
            return None

        try:
            return json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.warning(f"State snapshot unreadable at {self._path}, starting empty: {e}")
            return None
