"""Isolated, branch-scoped working copies for parallel units of work."""

from __future__ import annotations

import logging
import re
import subprocess
import threading
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from workflow_pilot.orchestrator.contracts import load_json, write_json_atomic
from workflow_pilot.orchestrator.models import Workspace, WorkspaceStatus
from workflow_pilot.storage.common import from_iso, utc_now

logger = logging.getLogger(__name__)

_UNIT_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")
REGISTRY_FILE_NAME = "worktrees.json"


class WorkspaceError(RuntimeError):
    """Workspace operation failed; carries the unit id and attempted operation."""

    def __init__(self, message: str, *, unit_id: str | None = None, operation: str | None = None) -> None:
        super().__init__(message)
        self.unit_id = unit_id
        self.operation = operation


class WorkspaceExistsError(WorkspaceError):
    """An active workspace already exists for the unit id."""


class WorkspaceNotFoundError(WorkspaceError, LookupError):
    """No active workspace for the unit id."""


class WorkspaceCommandError(WorkspaceError):
    """Version-control command exited non-zero."""

    def __init__(  # noqa: PLR0913
        self,
        message: str,
        *,
        command: list[str],
        output: str,
        unit_id: str | None = None,
        operation: str | None = None,
    ) -> None:
        super().__init__(message, unit_id=unit_id, operation=operation)
        self.command = command
        self.output = output


class WorkspacePushError(WorkspaceError):
    """Publishing the workspace branch failed."""


class VcsBackend(Protocol):
    """The only version-control operations the manager relies on."""

    def create_isolated_copy(self, path: Path, *, branch: str, base_ref: str) -> None:
        """Create a working copy at `path` on a new branch started from `base_ref`."""

    def push(self, path: Path, *, branch: str, remote: str) -> None:
        """Publish the branch of the working copy."""

    def remove(self, path: Path, *, branch: str) -> None:
        """Delete the working copy and its local branch."""

    def list_copies(self) -> list[tuple[Path, str | None]]:
        """Existing working copies as (path, branch) pairs."""


class GitWorktreeBackend:
    """`git worktree` based working copies sharing one object store."""

    def __init__(self, repo_path: Path, *, git: str = "git", timeout_seconds: float = 120.0) -> None:
        self.repo_path = repo_path
        self.git = git
        self.timeout_seconds = timeout_seconds

    def create_isolated_copy(self, path: Path, *, branch: str, base_ref: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._run(["worktree", "add", "-b", branch, str(path), base_ref])

    def push(self, path: Path, *, branch: str, remote: str) -> None:
        self._run(["push", "-u", remote, branch], cwd=path)

    def remove(self, path: Path, *, branch: str) -> None:
        if path.exists():
            self._run(["worktree", "remove", "--force", str(path)])
        else:
            self._run(["worktree", "prune"])
        self._run(["branch", "-D", branch])

    def list_copies(self) -> list[tuple[Path, str | None]]:
        return parse_worktree_porcelain(self._run(["worktree", "list", "--porcelain"]))

    def _run(self, args: list[str], *, cwd: Path | None = None) -> str:
        command = [self.git, *args]
        try:
            completed = subprocess.run(  # noqa: S603
                command,
                cwd=cwd or self.repo_path,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as error:
            raise WorkspaceCommandError(
                f"Cannot run {' '.join(command)}: {error}",
                command=command,
                output="",
            ) from error
        output = (completed.stdout + completed.stderr).strip()
        if completed.returncode != 0:
            raise WorkspaceCommandError(
                f"{' '.join(command)} exited with {completed.returncode}: {output[-500:]}",
                command=command,
                output=output,
            )
        return completed.stdout


def parse_worktree_porcelain(text: str) -> list[tuple[Path, str | None]]:
    """Parse `git worktree list --porcelain` blocks into (path, branch) pairs."""

    copies: list[tuple[Path, str | None]] = []
    for block in text.strip().split("\n\n"):
        path: Path | None = None
        branch: str | None = None
        for line in block.splitlines():
            if line.startswith("worktree "):
                path = Path(line.removeprefix("worktree ").strip())
            elif line.startswith("branch "):
                branch = line.removeprefix("branch ").strip().removeprefix("refs/heads/")
        if path is not None:
            copies.append((path, branch))
    return copies


class WorkspaceManager:
    """Registry of unit id -> working copy, persisted to `worktrees.json`."""

    def __init__(  # noqa: PLR0913
        self,
        backend: VcsBackend,
        *,
        root: Path,
        registry_path: Path | None = None,
        base_ref: str = "main",
        branch_prefix: str = "story/",
        remote: str = "origin",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.backend = backend
        self.root = root.resolve()
        self.registry_path = registry_path or self.root / REGISTRY_FILE_NAME
        self.base_ref = base_ref
        self.branch_prefix = branch_prefix
        self.remote = remote
        self._clock = clock
        self._lock = threading.RLock()
        self._workspaces = self._load_registry()

    def create(self, unit_id: str) -> Workspace:
        """Create an isolated copy; an active one for the same id is never touched."""

        _validate_unit_id(unit_id)
        with self._lock:
            existing = self._workspaces.get(unit_id)
            if existing is not None and existing.status is WorkspaceStatus.ACTIVE:
                raise WorkspaceExistsError(
                    f"Workspace for {unit_id} already exists at {existing.path}; destroy it first",
                    unit_id=unit_id,
                    operation="create",
                )
            path = self.root / unit_id
            branch = f"{self.branch_prefix}{unit_id}"
            try:
                self.backend.create_isolated_copy(path, branch=branch, base_ref=self.base_ref)
            except WorkspaceCommandError as error:
                raise WorkspaceCommandError(
                    f"Cannot create workspace for {unit_id}: {error}",
                    command=error.command,
                    output=error.output,
                    unit_id=unit_id,
                    operation="create",
                ) from error
            workspace = Workspace(
                unit_id=unit_id,
                path=str(path),
                branch=branch,
                base_ref=self.base_ref,
                status=WorkspaceStatus.ACTIVE,
                created_at=self._clock(),
            )
            self._workspaces[unit_id] = workspace
            self._save_registry()
        logger.info("Created workspace %s at %s on %s", unit_id, path, branch)
        return workspace

    def destroy(self, unit_id: str, *, finalized: bool = False) -> Workspace | None:
        """Remove the working copy; repeated calls are not an error."""

        with self._lock:
            workspace = self._workspaces.get(unit_id)
            if workspace is None or workspace.status is not WorkspaceStatus.ACTIVE:
                return workspace
            try:
                self.backend.remove(Path(workspace.path), branch=workspace.branch)
            except WorkspaceCommandError as error:
                logger.warning("Cleanup of workspace %s failed: %s", unit_id, error)
            workspace.status = WorkspaceStatus.FINALIZED if finalized else WorkspaceStatus.ABANDONED
            workspace.closed_at = self._clock()
            self._save_registry()
        logger.info("Destroyed workspace %s (%s)", unit_id, workspace.status.value)
        return workspace

    def get(self, unit_id: str) -> Workspace:
        with self._lock:
            workspace = self._workspaces.get(unit_id)
        if workspace is None:
            raise WorkspaceNotFoundError(f"No workspace for {unit_id}", unit_id=unit_id, operation="get")
        return workspace

    def active(self, unit_id: str, *, operation: str) -> Workspace:
        workspace = self.get(unit_id)
        if workspace.status is not WorkspaceStatus.ACTIVE:
            raise WorkspaceNotFoundError(
                f"Workspace for {unit_id} is {workspace.status.value}",
                unit_id=unit_id,
                operation=operation,
            )
        return workspace

    def list(self, *, active_only: bool = False) -> list[Workspace]:
        with self._lock:
            workspaces = sorted(self._workspaces.values(), key=lambda item: item.unit_id)
        if active_only:
            return [item for item in workspaces if item.status is WorkspaceStatus.ACTIVE]
        return workspaces

    def push(self, unit_id: str) -> Workspace:
        """Publish the workspace branch to the configured remote."""

        workspace = self.active(unit_id, operation="push")
        try:
            self.backend.push(Path(workspace.path), branch=workspace.branch, remote=self.remote)
        except WorkspaceCommandError as error:
            raise WorkspacePushError(
                f"Cannot push {workspace.branch} to {self.remote}: {error}",
                unit_id=unit_id,
                operation="push",
            ) from error
        logger.info("Pushed workspace %s branch %s", unit_id, workspace.branch)
        return workspace

    def finalize(self, unit_id: str) -> Workspace:
        """Push the branch, then remove the copy and mark it finalized."""

        self.push(unit_id)
        workspace = self.destroy(unit_id, finalized=True)
        if workspace is None:
            raise WorkspaceNotFoundError(f"No workspace for {unit_id}", unit_id=unit_id, operation="finalize")
        return workspace

    def sync(self) -> list[str]:
        """Mark registry entries whose copy no longer exists as abandoned."""

        existing = {path.resolve() for path, _ in self.backend.list_copies()}
        abandoned: list[str] = []
        with self._lock:
            for workspace in self._workspaces.values():
                if workspace.status is WorkspaceStatus.ACTIVE and Path(workspace.path).resolve() not in existing:
                    workspace.status = WorkspaceStatus.ABANDONED
                    workspace.closed_at = self._clock()
                    abandoned.append(workspace.unit_id)
            if abandoned:
                self._save_registry()
        for unit_id in abandoned:
            logger.warning("Workspace %s is missing on disk; marked abandoned", unit_id)
        return abandoned

    def _load_registry(self) -> dict[str, Workspace]:
        if not self.registry_path.exists():
            return {}
        payload = load_json(self.registry_path)
        workspaces: dict[str, Workspace] = {}
        for raw in payload.get("workspaces", []):
            workspace = _workspace_from_payload(raw)
            workspaces[workspace.unit_id] = workspace
        return workspaces

    def _save_registry(self) -> None:
        write_json_atomic(
            self.registry_path,
            {"workspaces": [_workspace_to_payload(item) for item in self._workspaces.values()]},
        )


def _workspace_to_payload(workspace: Workspace) -> dict[str, Any]:
    return {
        "unitId": workspace.unit_id,
        "path": workspace.path,
        "branch": workspace.branch,
        "baseRef": workspace.base_ref,
        "status": workspace.status.value,
        "createdAt": workspace.created_at.isoformat(),
        "closedAt": workspace.closed_at.isoformat() if workspace.closed_at else None,
    }


def _workspace_from_payload(raw: dict[str, Any]) -> Workspace:
    closed_at = raw.get("closedAt")
    return Workspace(
        unit_id=str(raw["unitId"]),
        path=str(raw["path"]),
        branch=str(raw["branch"]),
        base_ref=str(raw["baseRef"]),
        status=WorkspaceStatus(raw["status"]),
        created_at=from_iso(str(raw["createdAt"])),
        closed_at=from_iso(str(closed_at)) if closed_at else None,
    )


def _validate_unit_id(unit_id: str) -> None:
    if not _UNIT_ID_PATTERN.match(unit_id) or unit_id in {".", ".."}:
        raise WorkspaceError(
            f"Invalid unit id {unit_id!r}; use letters, digits, '.', '_' or '-'",
            unit_id=unit_id,
            operation="create",
        )
