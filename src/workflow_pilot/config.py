"""Runtime configuration for the workflow orchestrator."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

SUPPORTED_CLI_AGENTS: tuple[str, ...] = ("claude", "codex", "gemini")
_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


@dataclass(slots=True)
class PoolSettings:
    """Executor pool capacity and task timeouts."""

    max_concurrent: int = 3
    default_timeout_seconds: float = 600.0
    acquire_timeout_seconds: float | None = None


@dataclass(slots=True)
class RetrySettings:
    """Backoff policy for retryable step failures."""

    max_attempts: int = 3
    base_seconds: float = 1.0
    multiplier: float = 2.0
    max_seconds: float = 32.0
    jitter: bool = False


@dataclass(slots=True)
class DecisionSettings:
    """Decision engine confidence gate."""

    threshold: float = 0.75
    temperature: float = 0.3
    prior_knowledge_confidence: float = 0.95
    knowledge_dir: Path | None = None
    provider: str | None = None
    model: str | None = None


@dataclass(slots=True)
class ProviderSettings:
    """Provider defaults and backend wiring."""

    default_provider: str = "echo"
    default_model: str = "echo-1"
    command_templates: dict[str, str] = field(default_factory=dict)
    cli_models: dict[str, tuple[str, ...]] = field(default_factory=dict)
    http_base_url: str | None = None
    http_api_key: str | None = None
    http_models: tuple[str, ...] = ()
    pricing: str = ""


@dataclass(slots=True)
class WorkspaceSettings:
    """Isolated working copy settings."""

    repo_path: Path = Path()
    root: Path = Path(".workflow_pilot/worktrees")
    base_ref: str = "main"
    branch_prefix: str = "story/"
    remote: str = "origin"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by orchestrator component."""

    data_dir: Path = Path(".workflow_pilot")
    db_path: Path = Path(".workflow_pilot/orchestrator.db")
    state_dir: Path = Path(".workflow_pilot/state")
    workflows_dir: Path = Path("workflows")
    log_level: str = "WARNING"
    pool: PoolSettings = field(default_factory=PoolSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    decision: DecisionSettings = field(default_factory=DecisionSettings)
    providers: ProviderSettings = field(default_factory=ProviderSettings)
    workspace: WorkspaceSettings = field(default_factory=WorkspaceSettings)

    @classmethod
    def from_env(cls, data_dir: Path | None = None) -> Settings:
        """Load settings from environment with defaults suited to local runs."""

        resolved_data_dir = data_dir or Path(os.getenv("WORKFLOW_PILOT_DATA_DIR", ".workflow_pilot"))
        knowledge_dir = os.getenv("WORKFLOW_PILOT_DECISION_KNOWLEDGE_DIR", "").strip()
        acquire_timeout = os.getenv("WORKFLOW_PILOT_POOL_ACQUIRE_TIMEOUT_SECONDS", "").strip()
        return cls(
            data_dir=resolved_data_dir,
            db_path=Path(
                os.getenv("WORKFLOW_PILOT_DB_PATH", str(resolved_data_dir / "orchestrator.db")),
            ),
            state_dir=Path(os.getenv("WORKFLOW_PILOT_STATE_DIR", str(resolved_data_dir / "state"))),
            workflows_dir=Path(os.getenv("WORKFLOW_PILOT_WORKFLOWS_DIR", "workflows")),
            log_level=os.getenv("WORKFLOW_PILOT_LOG_LEVEL", "WARNING").strip().upper(),
            pool=PoolSettings(
                max_concurrent=int(os.getenv("WORKFLOW_PILOT_POOL_MAX_CONCURRENT", "3")),
                default_timeout_seconds=float(
                    os.getenv("WORKFLOW_PILOT_TASK_TIMEOUT_SECONDS", "600"),
                ),
                acquire_timeout_seconds=float(acquire_timeout) if acquire_timeout else None,
            ),
            retry=RetrySettings(
                max_attempts=int(os.getenv("WORKFLOW_PILOT_RETRY_MAX_ATTEMPTS", "3")),
                base_seconds=float(os.getenv("WORKFLOW_PILOT_RETRY_BASE_SECONDS", "1.0")),
                multiplier=float(os.getenv("WORKFLOW_PILOT_RETRY_MULTIPLIER", "2.0")),
                max_seconds=float(os.getenv("WORKFLOW_PILOT_RETRY_MAX_SECONDS", "32.0")),
                jitter=_env_bool("WORKFLOW_PILOT_RETRY_JITTER", default=False),
            ),
            decision=DecisionSettings(
                threshold=float(os.getenv("WORKFLOW_PILOT_DECISION_THRESHOLD", "0.75")),
                temperature=float(os.getenv("WORKFLOW_PILOT_DECISION_TEMPERATURE", "0.3")),
                prior_knowledge_confidence=float(
                    os.getenv("WORKFLOW_PILOT_DECISION_PRIOR_CONFIDENCE", "0.95"),
                ),
                knowledge_dir=Path(knowledge_dir) if knowledge_dir else None,
                provider=os.getenv("WORKFLOW_PILOT_DECISION_PROVIDER") or None,
                model=os.getenv("WORKFLOW_PILOT_DECISION_MODEL") or None,
            ),
            providers=ProviderSettings(
                default_provider=os.getenv("WORKFLOW_PILOT_DEFAULT_PROVIDER", "echo")
                .strip()
                .lower(),
                default_model=os.getenv("WORKFLOW_PILOT_DEFAULT_MODEL", "echo-1").strip(),
                command_templates=_collect_command_templates(),
                cli_models=_collect_cli_models(),
                http_base_url=os.getenv("WORKFLOW_PILOT_HTTP_BASE_URL") or None,
                http_api_key=os.getenv("WORKFLOW_PILOT_HTTP_API_KEY") or None,
                http_models=_split_csv(os.getenv("WORKFLOW_PILOT_HTTP_MODELS", "")),
                pricing=os.getenv("WORKFLOW_PILOT_PRICING", ""),
            ),
            workspace=WorkspaceSettings(
                repo_path=Path(os.getenv("WORKFLOW_PILOT_REPO_PATH", ".")),
                root=Path(
                    os.getenv("WORKFLOW_PILOT_WORKSPACE_ROOT", str(resolved_data_dir / "worktrees")),
                ),
                base_ref=os.getenv("WORKFLOW_PILOT_BASE_REF", "main"),
                branch_prefix=os.getenv("WORKFLOW_PILOT_BRANCH_PREFIX", "story/"),
                remote=os.getenv("WORKFLOW_PILOT_REMOTE", "origin"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.log_level not in _LOG_LEVELS:
            raise ValueError(f"WORKFLOW_PILOT_LOG_LEVEL must be one of {sorted(_LOG_LEVELS)}.")
        if self.pool.max_concurrent <= 0:
            raise ValueError("WORKFLOW_PILOT_POOL_MAX_CONCURRENT must be > 0.")
        if self.pool.default_timeout_seconds <= 0:
            raise ValueError("WORKFLOW_PILOT_TASK_TIMEOUT_SECONDS must be > 0.")
        if self.pool.acquire_timeout_seconds is not None and self.pool.acquire_timeout_seconds <= 0:
            raise ValueError("WORKFLOW_PILOT_POOL_ACQUIRE_TIMEOUT_SECONDS must be > 0.")
        if self.retry.max_attempts <= 0:
            raise ValueError("WORKFLOW_PILOT_RETRY_MAX_ATTEMPTS must be > 0.")
        if self.retry.base_seconds < 0 or self.retry.max_seconds < 0:
            raise ValueError("Retry backoff seconds must be >= 0.")
        if self.retry.multiplier < 1:
            raise ValueError("WORKFLOW_PILOT_RETRY_MULTIPLIER must be >= 1.")
        if not 0.0 <= self.decision.threshold <= 1.0:
            raise ValueError("WORKFLOW_PILOT_DECISION_THRESHOLD must be within [0, 1].")
        if not 0.0 <= self.decision.prior_knowledge_confidence <= 1.0:
            raise ValueError("WORKFLOW_PILOT_DECISION_PRIOR_CONFIDENCE must be within [0, 1].")
        if not 0.0 <= self.decision.temperature <= 2.0:
            raise ValueError("WORKFLOW_PILOT_DECISION_TEMPERATURE must be within [0, 2].")
        if not self.providers.default_provider:
            raise ValueError("WORKFLOW_PILOT_DEFAULT_PROVIDER must not be empty.")
        for agent, template in self.providers.command_templates.items():
            if "{prompt}" not in template and "{prompt_file}" not in template:
                raise ValueError(
                    f"WORKFLOW_PILOT_{agent.upper()}_COMMAND_TEMPLATE must include "
                    "{prompt} or {prompt_file}.",
                )


def _collect_command_templates() -> dict[str, str]:
    templates: dict[str, str] = {}
    for agent in SUPPORTED_CLI_AGENTS:
        value = os.getenv(f"WORKFLOW_PILOT_{agent.upper()}_COMMAND_TEMPLATE", "").strip()
        if value:
            templates[agent] = value
    return templates


def _collect_cli_models() -> dict[str, tuple[str, ...]]:
    models: dict[str, tuple[str, ...]] = {}
    for agent in SUPPORTED_CLI_AGENTS:
        values = _split_csv(os.getenv(f"WORKFLOW_PILOT_{agent.upper()}_MODELS", ""))
        if values:
            models[agent] = values
    return models


def _split_csv(raw: str) -> tuple[str, ...]:
    values: list[str] = []
    for part in raw.split(","):
        normalized = part.strip()
        if normalized and normalized not in values:
            values.append(normalized)
    return tuple(values)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
