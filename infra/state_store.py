"""
Cycle Investor Infrastructure: State Stores

Persistent JSON storage for cycles, positions and calibration state.

Every read-modify-write runs under an exclusive ``fcntl`` lock on a sidecar
lock file (serializing writers across processes) plus a thread lock
(serializing writers inside one process). Writes are atomic: temp file in
the same directory, then ``os.replace``.
"""

import fcntl
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from core.calibration import CalibrationState
from core.exceptions import StaleCycleVersionError
from core.models import Cycle, Position

logger = logging.getLogger(__name__)

MAX_COMPLETED_HISTORY = 50


class JsonFileStore:
    """
    One JSON document on disk with locked, atomic access.

    Subclasses call ``_read`` / ``_write`` only inside ``_locked()``.
    """

    def __init__(self, path: str, default: Callable[[], Any]):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self._default = default
        self._thread_lock = threading.Lock()

    @contextmanager
    def _locked(self, shared: bool = False):
        with self._thread_lock:
            with open(self.lock_path, "a+") as lock_f:
                fcntl.flock(lock_f.fileno(), fcntl.LOCK_SH if shared else fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(lock_f.fileno(), fcntl.LOCK_UN)

    def _read(self) -> Any:
        if not self.path.exists():
            return self._default()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            logger.error(f"Corrupt state file {self.path}: {e}")
            raise

    def _write(self, data: Any) -> None:
        temp_fd, temp_path = tempfile.mkstemp(
            dir=self.path.parent,
            prefix=f".{self.path.stem}_",
            suffix=".json.tmp",
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.path)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise


def _empty_cycles() -> Dict[str, Any]:
    return {"cycles": {}, "active": [], "completed": []}


class CycleStore(JsonFileStore):
    """
    Cycles plus the active/completed index.

    ``save_cycle`` implements the optimistic check: a save that carries an
    ``expected_version`` different from the stored one is rejected, so only
    one writer can append a given iteration slot.
    """

    def __init__(self, path: Optional[str] = None):
        super().__init__(path or os.getenv("CYCLES_FILE", "data/cycles.json"), _empty_cycles)
        logger.info(f"Initialized CycleStore at {self.path}")

    def load_cycle(self, cycle_id: str) -> Optional[Cycle]:
        with self._locked(shared=True):
            data = self._read()
        raw = data.get("cycles", {}).get(cycle_id)
        return Cycle.from_dict(raw) if raw else None

    def save_cycle(self, cycle: Cycle, expected_version: Optional[int] = None) -> Cycle:
        """
        Persist ``cycle`` and return it with its new version.

        Raises:
            StaleCycleVersionError: stored version differs from expected_version,
                or the save would drop stored iterations
        """
        with self._locked():
            data = self._read()
            cycles = data.setdefault("cycles", {})
            stored = cycles.get(cycle.id)
            stored_version = int(stored.get("version", 0)) if stored else 0

            if expected_version is not None and expected_version != stored_version:
                raise StaleCycleVersionError(cycle.id, expected_version, stored_version)
            if stored and len(stored.get("iterations") or []) > len(cycle.iterations):
                raise StaleCycleVersionError(cycle.id, cycle.version, stored_version)

            saved = replace(cycle, version=stored_version + 1)
            cycles[cycle.id] = saved.to_dict()
            self._update_index(data, saved)
            self._write(data)

        logger.debug(f"Saved cycle {saved.id} v{saved.version} ({len(saved.iterations)} iterations)")
        return saved

    @staticmethod
    def _update_index(data: Dict[str, Any], cycle: Cycle) -> None:
        active: List[str] = data.setdefault("active", [])
        completed: List[str] = data.setdefault("completed", [])
        if not cycle.is_completed:
            if cycle.id not in active:
                active.append(cycle.id)
            return

        if cycle.id in active:
            active.remove(cycle.id)
        if cycle.id in completed:
            completed.remove(cycle.id)
        completed.insert(0, cycle.id)
        for dropped in completed[MAX_COMPLETED_HISTORY:]:
            data["cycles"].pop(dropped, None)
        del completed[MAX_COMPLETED_HISTORY:]

    def list_active_ids(self) -> List[str]:
        with self._locked(shared=True):
            return list(self._read().get("active", []))

    def list_completed_ids(self) -> List[str]:
        with self._locked(shared=True):
            return list(self._read().get("completed", []))

    def load_active_cycles(self) -> List[Cycle]:
        with self._locked(shared=True):
            data = self._read()
        cycles = data.get("cycles", {})
        return [Cycle.from_dict(cycles[cid]) for cid in data.get("active", []) if cid in cycles]

    def load_completed_cycles(self) -> List[Cycle]:
        with self._locked(shared=True):
            data = self._read()
        cycles = data.get("cycles", {})
        return [Cycle.from_dict(cycles[cid]) for cid in data.get("completed", []) if cid in cycles]


def _empty_positions() -> Dict[str, Any]:
    return {"positions": []}


class PositionStore(JsonFileStore):
    """All positions, open and closed, as one list."""

    def __init__(self, path: Optional[str] = None):
        super().__init__(path or os.getenv("POSITIONS_FILE", "data/positions.json"), _empty_positions)
        logger.info(f"Initialized PositionStore at {self.path}")

    def get_positions(self) -> List[Position]:
        with self._locked(shared=True):
            data = self._read()
        return [Position.from_dict(p) for p in data.get("positions", [])]

    def save_positions(self, positions: List[Position]) -> None:
        with self._locked():
            self._write({"positions": [p.to_dict() for p in positions]})
        logger.debug(f"Saved {len(positions)} positions")

    def update(self, fn: Callable[[List[Position]], List[Position]]) -> List[Position]:
        """Apply ``fn`` to the stored positions under the lock and save the result."""
        with self._locked():
            data = self._read()
            updated = fn([Position.from_dict(p) for p in data.get("positions", [])])
            self._write({"positions": [p.to_dict() for p in updated]})
        return updated


class CalibrationStore(JsonFileStore):
    """
    Calibration state singleton.

    Concurrent close events go through ``update`` so each EMA update sees the
    result of the previous one.
    """

    def __init__(self, path: Optional[str] = None):
        super().__init__(path or os.getenv("CALIBRATION_FILE", "data/calibration.json"), dict)
        logger.info(f"Initialized CalibrationStore at {self.path}")

    def load(self) -> CalibrationState:
        with self._locked(shared=True):
            return CalibrationState.from_dict(self._read())

    def save(self, state: CalibrationState) -> None:
        with self._locked():
            self._write(state.to_dict())

    def update(self, fn: Callable[[CalibrationState], CalibrationState]) -> CalibrationState:
        with self._locked():
            state = fn(CalibrationState.from_dict(self._read()))
            self._write(state.to_dict())
        return state
