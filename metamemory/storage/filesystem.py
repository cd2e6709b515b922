"""FilesystemStateStore: one JSON snapshot of MetamemoryState per task."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from ..types import MetamemoryState
from .helpers import dt_to_str, safe_filename
from .serialization import state_from_dict, state_to_dict

logger = logging.getLogger(__name__)


class FilesystemStateStore:
    """Persist task states under ``root/<task>.json``."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _path(self, task_id: str) -> Path:
        return self.root / f"{safe_filename(task_id)}.json"

    def save_state(self, task_id: str, state: MetamemoryState) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        path = self._path(task_id)
        data = {
            "task_id": task_id,
            "saved_at": dt_to_str(datetime.now(timezone.utc)),
            "state": state_to_dict(state),
        }
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(data, indent=2))
        tmp.replace(path)
        logger.debug("Saved state for task %s to %s", task_id, path)
        return path

    def load_state(self, task_id: str) -> MetamemoryState | None:
        path = self._path(task_id)
        if not path.is_file():
            return None
        try:
            data = json.loads(path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Unreadable state snapshot %s: %s", path, e)
            return None
        return state_from_dict(data.get("state", {}))

    def delete_state(self, task_id: str) -> bool:
        path = self._path(task_id)
        if not path.is_file():
            return False
        path.unlink()
        return True

    def list_tasks(self) -> list[str]:
        if not self.root.is_dir():
            return []
        tasks: list[str] = []
        for path in sorted(self.root.glob("*.json")):
            try:
                data = json.loads(path.read_text())
            except (json.JSONDecodeError, OSError):
                continue
            tasks.append(data.get("task_id", path.stem))
        return tasks
