"""Crash-safe, per-run JSON persistence of workflow state."""

from __future__ import annotations

import json
import logging
import os
import re
import threading
from pathlib import Path

from workflow_pilot.orchestrator.contracts import (
    load_json,
    state_from_payload,
    state_to_payload,
    write_json_atomic,
)
from workflow_pilot.orchestrator.models import WorkflowState

logger = logging.getLogger(__name__)

_RUN_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_SAFE_LABEL = re.compile(r"[^A-Za-z0-9._-]+")


class StateCorruptionError(RuntimeError):
    """Persisted state exists but cannot be parsed; never partially recovered."""

    def __init__(self, run_id: str, path: Path, reason: str) -> None:
        super().__init__(f"State for run {run_id} is corrupted ({path}): {reason}")
        self.run_id = run_id
        self.path = path


class StateOwnershipError(RuntimeError):
    """A second writer tried to persist a run owned by someone else."""


class StateStore:
    """One JSON snapshot per run under `active/`, moved to `archive/` when finished.

    `save` is the only mutator of persisted state. Each run has at most one writer,
    tracked through `claim`/`release`.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.active_dir = root / "active"
        self.archive_dir = root / "archive"
        self.checkpoint_dir = root / "checkpoints"
        self._owners: dict[str, object] = {}
        self._lock = threading.Lock()

    def claim(self, run_id: str, owner: object) -> None:
        """Register `owner` as the single writer for a run."""

        _validate_run_id(run_id)
        with self._lock:
            current = self._owners.get(run_id)
            if current is not None and current is not owner:
                raise StateOwnershipError(f"Run {run_id} is already owned by another writer")
            self._owners[run_id] = owner

    def release(self, run_id: str, owner: object) -> None:
        with self._lock:
            if self._owners.get(run_id) is owner:
                del self._owners[run_id]

    def is_claimed(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._owners

    def save(self, state: WorkflowState, *, owner: object | None = None) -> None:
        """Atomically replace the run's snapshot."""

        _validate_run_id(state.run_id)
        with self._lock:
            current = self._owners.get(state.run_id)
        if current is not None and owner is not current:
            raise StateOwnershipError(f"Run {state.run_id} is owned by another writer")
        write_json_atomic(self._active_path(state.run_id), state_to_payload(state))

    def load(self, run_id: str) -> WorkflowState | None:
        """Load an active run; None when it does not exist."""

        _validate_run_id(run_id)
        return self._read(run_id, self._active_path(run_id))

    def load_archived(self, run_id: str) -> WorkflowState | None:
        _validate_run_id(run_id)
        return self._read(run_id, self.archive_dir / f"{run_id}.json")

    def list_active(self) -> list[str]:
        """Run ids with an active (not archived) snapshot."""

        return _list_ids(self.active_dir)

    def list_archived(self) -> list[str]:
        return _list_ids(self.archive_dir)

    def archive(self, run_id: str) -> Path:
        """Move a finished run's snapshot into the archive; history is never deleted."""

        _validate_run_id(run_id)
        source = self._active_path(run_id)
        target = self.archive_dir / f"{run_id}.json"
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        os.replace(source, target)
        logger.info("Archived state for run %s", run_id)
        return target

    def write_checkpoint(self, state: WorkflowState, *, label: str) -> Path:
        """Keep an immutable copy of the snapshot taken at an explicit checkpoint."""

        _validate_run_id(state.run_id)
        safe_label = _SAFE_LABEL.sub("-", label).strip("-") or "checkpoint"
        path = self.checkpoint_dir / state.run_id / f"{safe_label}.json"
        write_json_atomic(path, state_to_payload(state))
        return path

    def _active_path(self, run_id: str) -> Path:
        return self.active_dir / f"{run_id}.json"

    @staticmethod
    def _read(run_id: str, path: Path) -> WorkflowState | None:
        try:
            payload = load_json(path)
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as error:
            raise StateCorruptionError(run_id, path, str(error)) from error
        try:
            state = state_from_payload(payload)
        except (TypeError, ValueError) as error:
            raise StateCorruptionError(run_id, path, str(error)) from error
        if state.run_id != run_id:
            raise StateCorruptionError(run_id, path, f"file holds run {state.run_id}")
        return state


def _list_ids(directory: Path) -> list[str]:
    if not directory.exists():
        return []
    return sorted(
        path.stem for path in directory.iterdir() if path.is_file() and path.suffix == ".json"
    )


def _validate_run_id(run_id: str) -> None:
    if not _RUN_ID_PATTERN.match(run_id):
        raise ValueError(f"Invalid run id: {run_id!r}")
