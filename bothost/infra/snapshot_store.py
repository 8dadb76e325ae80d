# bothost/infra/snapshot_store.py
"""
Whole-document JSON snapshot of the bot registry.

Two independent files:
    bots.json      {bot_id: {"credential": ..., "name": ..., "status": ...}}
    commands.json  {bot_id: {command_name: logic}}

Writes go to a temp file in the same directory followed by ``os.replace``,
so a crash mid-write never leaves a truncated document behind.  Loading
never raises: a missing file is empty state, a malformed one is logged and
treated as empty.
"""
from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from bothost.core.errors import PersistenceError
from bothost.infra.logging_config import get_logger
from bothost.infra.metrics import AppMetrics

logger = get_logger(__name__)


class JsonFileSnapshotStore:
    """Snapshot store backed by two JSON files."""

    def __init__(self, bots_path: Path | str, commands_path: Path | str):
        self.bots_path = Path(bots_path)
        self.commands_path = Path(commands_path)

    @classmethod
    def from_settings(cls) -> "JsonFileSnapshotStore":
        from bothost.config import settings
        return cls(settings.bots_path, settings.commands_path)

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    def load(self) -> tuple[dict[str, dict], dict[str, dict]]:
        bots = self._read_document(self.bots_path)
        commands = self._read_document(self.commands_path)
        logger.info(
            f"✅ Snapshot loaded: {len(bots)} bot(s), "
            f"{sum(len(c) for c in commands.values())} command(s)"
        )
        return bots, commands

    @staticmethod
    def _read_document(path: Path) -> dict[str, dict]:
        if not path.exists():
            logger.info(f"Snapshot document {path} not found, starting empty")
            return {}
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            AppMetrics.persistence_error("load")
            logger.error(f"⚠️ Could not load snapshot document {path}: {exc}")
            return {}

        if not isinstance(raw, dict):
            AppMetrics.persistence_error("load")
            logger.error(f"⚠️ Snapshot document {path} is not a JSON object, ignoring it")
            return {}

        # Drop entries that are not objects rather than rejecting the whole file
        document: dict[str, dict] = {}
        for key, value in raw.items():
            if isinstance(value, dict):
                document[str(key)] = value
            else:
                logger.warning(f"Ignoring malformed entry {key!r} in {path}")
        return document

    # ------------------------------------------------------------------
    # Save
    # ------------------------------------------------------------------

    def save(self, bots: dict[str, dict], commands: dict[str, dict]) -> None:
        try:
            self._write_document(self.bots_path, bots)
            self._write_document(self.commands_path, commands)
        except (OSError, TypeError, ValueError) as exc:
            AppMetrics.persistence_error("save")
            raise PersistenceError(f"Could not save snapshot: {exc}") from exc

    @staticmethod
    def _write_document(path: Path, document: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(document, indent=2, ensure_ascii=False)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise
