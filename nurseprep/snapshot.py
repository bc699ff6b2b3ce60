"""Client-local result snapshots, written before the remote finalize settles."""
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class LocalSnapshotCache:
    """
    One JSON file per attempt under `directory`.

    Writes are atomic (temp file + os.replace) so a crash mid-write never leaves a
    half-written snapshot. This is a fast path for the results view and a recovery
    source for unfinished submissions, not the system of record.
    """

    SUFFIX = ".json"

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self._lock = threading.Lock()

    def _path(self, attempt_id: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "-_" else "_" for c in attempt_id)
        return self.directory / f"{safe}{self.SUFFIX}"

    def write(self, attempt_id: str, payload: Dict[str, Any]) -> Path:
        path = self._path(attempt_id)
        with self._lock:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=".tmp-", suffix=self.SUFFIX)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump({"attempt_id": attempt_id, **payload}, f)
                os.replace(tmp, path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        logger.debug(f"Wrote local snapshot {path}")
        return path

    def read(self, attempt_id: str) -> Optional[Dict[str, Any]]:
        path = self._path(attempt_id)
        if not path.exists():
            return None
        with path.open(encoding="utf-8") as f:
            return json.load(f)

    def update(self, attempt_id: str, **fields) -> None:
        data = self.read(attempt_id)
        if data is None:
            return
        data.update(fields)
        data.pop("attempt_id", None)
        self.write(attempt_id, data)

    def consume(self, attempt_id: str) -> Optional[Dict[str, Any]]:
        """
        Read for the results view, deleting the file once its remote finalize is confirmed.
        An unconfirmed snapshot stays on disk for recover_pending_submissions().
        """
        with self._lock:
            path = self._path(attempt_id)
            if not path.exists():
                return None
            with path.open(encoding="utf-8") as f:
                data = json.load(f)
            if data.get("finalized"):
                path.unlink()
        return data

    def clear(self, attempt_id: str) -> None:
        path = self._path(attempt_id)
        if path.exists():
            path.unlink()

    def pending(self) -> List[Dict[str, Any]]:
        """Snapshots whose remote finalize has not been confirmed."""
        if not self.directory.exists():
            return []
        out = []
        for path in sorted(self.directory.glob(f"*{self.SUFFIX}")):
            if path.name.startswith(".tmp-"):
                continue
            try:
                with path.open(encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, ValueError) as e:
                logger.error(f"Unreadable snapshot {path}: {e}")
                continue
            if not data.get("finalized"):
                out.append(data)
        return out
