"""
Swarm configuration.

All settings come from environment variables with sane defaults. An optional
YAML file (SWARM_CONFIG_FILE) can overlay values by field name, which is
convenient for worker hosts that share one config file.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigurationError
from .models import RunOptions

logger = logging.getLogger("config")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got '{value}'")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got '{value}'")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
HEARTBEAT_TTL_SECONDS = 90
FIX_CHAIN_TTL_SECONDS = 7 * 24 * 60 * 60
FIX_LOOP_THRESHOLD = 2
DEFAULT_WORKER_COUNT = 4
DEFAULT_TEMPORAL_ADDRESS = "localhost:7233"
DEFAULT_NAMESPACE = "ai-swarm"
DEFAULT_TASK_QUEUE = "ai-swarm-tasks"


@dataclass
class SwarmSettings:
    """Settings shared by the API, the worker and the loops."""
    # Temporal
    temporal_address: str = DEFAULT_TEMPORAL_ADDRESS
    temporal_namespace: str = DEFAULT_NAMESPACE
    task_queue: str = DEFAULT_TASK_QUEUE

    # Shared state
    state_backend: str = "redis"
    redis_url: str = "redis://localhost:6379/0"
    data_dir: Path = Path("data/swarm")

    # Workers and liveness
    worker_id: str = "worker-1"
    worker_count: int = DEFAULT_WORKER_COUNT
    heartbeat_interval_seconds: float = 30.0
    heartbeat_ttl_seconds: int = HEARTBEAT_TTL_SECONDS

    # Worker pools
    max_concurrent_activities: int = 10
    max_concurrent_runs: int = 5

    # Activity policy
    activity_timeout_seconds: float = 15 * 60
    activity_max_attempts: int = 3
    activity_initial_interval_seconds: float = 5.0
    activity_backoff_coefficient: float = 2.0
    activity_max_interval_seconds: float = 120.0

    # Orchestrator
    approval_timeout_seconds: float = 24 * 60 * 60
    max_implementation_attempts: int = 3
    auto_fix_enabled: bool = True
    fix_chain_ttl_seconds: int = FIX_CHAIN_TTL_SECONDS
    fix_loop_threshold: int = FIX_LOOP_THRESHOLD

    # Self-heal and supervisor
    check_interval_seconds: float = 60.0
    max_iterations_before_reset: int = 100
    cleanup_interval_seconds: float = 24 * 60 * 60
    stuck_run_threshold_seconds: float = 60 * 60
    cleanup_max_age_days: int = 90
    check_gemini_cli: bool = False

    # Source tree and tools
    repo_path: Path = Path(".")
    base_branch: str = "main"
    merge_method: str = "squash"
    worktree_dir: Path = Path("data/worktrees")
    worktree_retention_days: int = 1
    llm_provider: str = "claude"
    llm_cli: str = "claude"
    llm_timeout_seconds: float = 10 * 60
    deploy_command: Optional[str] = None
    verify_command: Optional[str] = None
    command_timeout_seconds: float = 10 * 60

    # Notifications
    email_provider: str = "resend"
    email_api_key: Optional[str] = None
    email_from: str = "swarm@localhost"
    email_to: Optional[str] = None
    notification_log_dir: Path = Path("data/swarm/notifications")

    log_level: str = "INFO"
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_env(cls, config_file: Optional[str] = None) -> "SwarmSettings":
        """Build settings from the environment, then overlay the YAML file if any."""
        data_dir = Path(os.getenv("SWARM_DATA_DIR", "data/swarm"))
        settings = cls(
            temporal_address=os.getenv("TEMPORAL_ADDRESS", DEFAULT_TEMPORAL_ADDRESS),
            temporal_namespace=os.getenv("TEMPORAL_NAMESPACE", DEFAULT_NAMESPACE),
            task_queue=os.getenv("TEMPORAL_TASK_QUEUE", DEFAULT_TASK_QUEUE),
            state_backend=os.getenv("SWARM_STATE_BACKEND", "redis"),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            data_dir=data_dir,
            worker_id=os.getenv("WORKER_ID", "worker-1"),
            worker_count=_env_int("WORKER_COUNT", DEFAULT_WORKER_COUNT),
            heartbeat_interval_seconds=_env_float("HEARTBEAT_INTERVAL_SECONDS", 30.0),
            max_concurrent_activities=_env_int("MAX_CONCURRENT_ACTIVITIES", 10),
            max_concurrent_runs=_env_int("MAX_CONCURRENT_WORKFLOWS", 5),
            activity_timeout_seconds=_env_float("ACTIVITY_TIMEOUT_SECONDS", 15 * 60),
            activity_max_attempts=_env_int("ACTIVITY_MAX_ATTEMPTS", 3),
            approval_timeout_seconds=_env_float("APPROVAL_TIMEOUT_SECONDS", 24 * 60 * 60),
            max_implementation_attempts=_env_int("MAX_IMPLEMENTATION_ATTEMPTS", 3),
            auto_fix_enabled=_env_bool("AUTO_FIX_ENABLED", True),
            check_interval_seconds=_env_float("SELF_HEAL_CHECK_INTERVAL", 60.0),
            max_iterations_before_reset=_env_int("SELF_HEAL_MAX_ITERATIONS", 100),
            stuck_run_threshold_seconds=_env_float("STUCK_RUN_THRESHOLD_SECONDS", 60 * 60),
            cleanup_max_age_days=_env_int("CLEANUP_MAX_AGE_DAYS", 90),
            check_gemini_cli=_env_bool("CHECK_GEMINI_CLI", False),
            repo_path=Path(os.getenv("REPO_PATH", ".")),
            base_branch=os.getenv("BASE_BRANCH", "main"),
            merge_method=os.getenv("MERGE_METHOD", "squash"),
            worktree_dir=Path(os.getenv("WORKTREE_DIR", "data/worktrees")),
            worktree_retention_days=_env_int("WORKTREE_RETENTION_DAYS", 1),
            llm_provider=os.getenv("LLM_PROVIDER", "claude"),
            llm_cli=os.getenv("LLM_CLI", "claude"),
            llm_timeout_seconds=_env_float("LLM_TIMEOUT_SECONDS", 10 * 60),
            deploy_command=os.getenv("DEPLOY_COMMAND") or None,
            verify_command=os.getenv("VERIFY_COMMAND") or None,
            command_timeout_seconds=_env_float("COMMAND_TIMEOUT_SECONDS", 10 * 60),
            email_provider=os.getenv("EMAIL_PROVIDER", "resend"),
            email_api_key=os.getenv("EMAIL_API_KEY") or None,
            email_from=os.getenv("EMAIL_FROM", "swarm@localhost"),
            email_to=os.getenv("EMAIL_TO") or None,
            notification_log_dir=Path(
                os.getenv("NOTIFICATION_LOG_DIR", str(data_dir / "notifications"))
            ),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

        config_file = config_file or os.getenv("SWARM_CONFIG_FILE")
        if config_file:
            settings.apply_overrides(load_config_file(Path(config_file)))

        settings.validate()
        return settings

    def apply_overrides(self, overrides: Dict[str, Any]) -> None:
        """Overlay known fields; unknown keys are kept in `extra`."""
        known = {f.name: f for f in fields(self)}
        for key, value in overrides.items():
            if key not in known or key == "extra":
                self.extra[key] = value
                continue
            current = getattr(self, key)
            if isinstance(current, Path):
                value = Path(value)
            setattr(self, key, value)

    def validate(self) -> None:
        if self.state_backend not in ("redis", "memory"):
            raise ConfigurationError(
                f"SWARM_STATE_BACKEND must be 'redis' or 'memory', got '{self.state_backend}'"
            )
        if self.worker_count < 1:
            raise ConfigurationError("WORKER_COUNT must be at least 1")
        if self.max_concurrent_activities < 1 or self.max_concurrent_runs < 1:
            raise ConfigurationError("Concurrency limits must be at least 1")
        if self.merge_method not in ("squash", "merge", "rebase"):
            raise ConfigurationError(
                f"MERGE_METHOD must be squash, merge or rebase, got '{self.merge_method}'"
            )
        if self.email_provider not in ("resend", "sendgrid"):
            raise ConfigurationError(
                f"EMAIL_PROVIDER must be 'resend' or 'sendgrid', got '{self.email_provider}'"
            )

    def run_options(self) -> RunOptions:
        """Per-run settings handed to each orchestrator run at submission."""
        return RunOptions(
            approval_timeout_seconds=self.approval_timeout_seconds,
            max_implementation_attempts=self.max_implementation_attempts,
            auto_fix_enabled=self.auto_fix_enabled,
            activity_timeout_seconds=self.activity_timeout_seconds,
            activity_max_attempts=self.activity_max_attempts,
            activity_initial_interval_seconds=self.activity_initial_interval_seconds,
            activity_backoff_coefficient=self.activity_backoff_coefficient,
            activity_max_interval_seconds=self.activity_max_interval_seconds,
        )

    @property
    def heartbeat_history_file(self) -> Path:
        return self.data_dir / "worker_history.json"


def load_config_file(path: Path) -> Dict[str, Any]:
    """Load a YAML overlay file. Missing file is a configuration error."""
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}", {"path": str(path)})
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}", {"path": str(path)})
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    logger.info(f"Loaded config overlay from {path} ({len(data)} keys)")
    return data


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
