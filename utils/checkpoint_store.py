"""JSON file persistence for operation checkpoints."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import List, Optional

from core.operation_tracker import Checkpoint

logger = logging.getLogger(__name__)

DEFAULT_CHECKPOINT_DIR = Path("data/checkpoints")
LATEST_NAME = "latest.json"


class JsonCheckpointStore:
    """Writes each checkpoint atomically and keeps a ``latest.json`` copy.

    Instances are callable so they can be handed to the tracker directly as
    its checkpoint sink.
    """

    def __init__(self, directory: Path | str = DEFAULT_CHECKPOINT_DIR, keep: int = 20):
        self.directory = Path(directory)
        self.keep = keep

    def __call__(self, checkpoint: Checkpoint) -> None:
        self.save(checkpoint)

    def _path_for(self, checkpoint: Checkpoint) -> Path:
        stamp = checkpoint.timestamp.replace(":", "").replace("-", "").replace("+", "_")
        operation = checkpoint.operation_id if checkpoint.operation_id is not None else "local"
        return self.directory / f"checkpoint_{stamp}_{operation}.json"

    def _atomic_write(self, path: Path, content: str) -> None:
        temp_fd, temp_path_str = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
        temp_path = Path(temp_path_str)
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            temp_path.replace(path)
        except OSError:
            temp_path.unlink(missing_ok=True)
            raise

    def save(self, checkpoint: Checkpoint) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        content = json.dumps(checkpoint.to_dict(), ensure_ascii=False, indent=2)
        path = self._path_for(checkpoint)
        self._atomic_write(path, content)
        self._atomic_write(self.directory / LATEST_NAME, content)
        self._prune()
        logger.debug("Checkpoint written to %s", path)
        return path

    def list_checkpoints(self) -> List[Path]:
        if not self.directory.exists():
            return []
        return sorted(self.directory.glob("checkpoint_*.json"))

    def _prune(self) -> None:
        checkpoints = self.list_checkpoints()
        for stale in checkpoints[: max(0, len(checkpoints) - self.keep)]:
            stale.unlink(missing_ok=True)

    def load(self, path: Path | str) -> Checkpoint:
        with Path(path).open("r", encoding="utf-8") as handle:
            return Checkpoint.from_dict(json.load(handle))

    def load_latest(self) -> Optional[Checkpoint]:
        latest = self.directory / LATEST_NAME
        if not latest.exists():
            return None
        try:
            return self.load(latest)
        except (OSError, ValueError) as exc:
            logger.warning("Failed to read checkpoint %s: %s", latest, exc)
            return None
