from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

WORKSPACES_DIR = Path("workspaces")
CURRENT_WORKSPACE_FILE = WORKSPACES_DIR / ".current"
WORKSPACE_FILENAME = "workspace.yaml"
EVENTS_FILENAME = "events.ndjson"

DEFAULT_ROUTING_RULES = Path("resources/rules/routing_rules.yaml")
DEFAULT_COLLISION_RULES = Path("resources/rules/collision_rules.yaml")
DEFAULT_BATCH_SIZE = 100
DEFAULT_DEADLINE_SECONDS = 30.0
DEFAULT_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class StoreConfig:
    sqlite_path: Path
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS


@dataclass(frozen=True)
class RulesConfig:
    routing_path: Path
    collision_path: Path


@dataclass(frozen=True)
class ScoringConfig:
    batch_size: int = DEFAULT_BATCH_SIZE
    deadline_seconds: float | None = DEFAULT_DEADLINE_SECONDS


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass(frozen=True)
class WorkspaceConfig:
    name: str
    store: StoreConfig
    rules: RulesConfig
    scoring: ScoringConfig
    logging: LoggingConfig
    path: Path

    @property
    def events_path(self) -> Path:
        return self.path / EVENTS_FILENAME


class WorkspaceError(RuntimeError):
    pass


def ensure_workspaces_dir() -> None:
    WORKSPACES_DIR.mkdir(parents=True, exist_ok=True)


def set_current_workspace(name: str) -> None:
    ensure_workspaces_dir()
    CURRENT_WORKSPACE_FILE.write_text(f"{name}\n", encoding="utf-8")


def get_current_workspace_name() -> str:
    if not CURRENT_WORKSPACE_FILE.exists():
        raise WorkspaceError("No active workspace. Run `revengine workspace use <name>`.")
    return CURRENT_WORKSPACE_FILE.read_text(encoding="utf-8").strip()


def workspace_path(name: str) -> Path:
    return WORKSPACES_DIR / name


def workspace_config_path(name: str) -> Path:
    return workspace_path(name) / WORKSPACE_FILENAME


def load_workspace(name: str | None = None) -> WorkspaceConfig:
    if name is None:
        name = get_current_workspace_name()
    return load_workspace_file(workspace_config_path(name), name=name)


def load_workspace_file(config_path: Path, name: str | None = None) -> WorkspaceConfig:
    if not config_path.exists():
        raise WorkspaceError(f"Workspace config not found: {config_path}")
    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise WorkspaceError(f"Invalid workspace YAML in {config_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise WorkspaceError("Workspace config must be a mapping.")
    return WorkspaceConfig(
        name=name or str(data.get("workspace") or config_path.parent.name),
        store=_parse_store(data.get("store"), config_path),
        rules=_parse_rules(data.get("rules"), config_path),
        scoring=_parse_scoring(data.get("scoring")),
        logging=_parse_logging(data.get("logging")),
        path=config_path.parent,
    )


def write_workspace_config(name: str) -> Path:
    ensure_workspaces_dir()
    ws_dir = workspace_path(name)
    ws_dir.mkdir(parents=True, exist_ok=True)
    config = {
        "workspace": name,
        "store": {"sqlite_path": "./local.sqlite", "timeout_seconds": DEFAULT_TIMEOUT_SECONDS},
        "rules": {
            "routing_path": str(DEFAULT_ROUTING_RULES),
            "collision_path": str(DEFAULT_COLLISION_RULES),
        },
        "scoring": {
            "batch_size": DEFAULT_BATCH_SIZE,
            "deadline_seconds": DEFAULT_DEADLINE_SECONDS,
        },
        "logging": {"level": "INFO", "json": False},
    }
    config_path = workspace_config_path(name)
    config_path.write_text(yaml.safe_dump(config, sort_keys=False), encoding="utf-8")
    return config_path


def _parse_store(store_data: Any, config_path: Path) -> StoreConfig:
    if not isinstance(store_data, dict):
        raise WorkspaceError("Invalid workspace store configuration.")
    sqlite_path_raw = store_data.get("sqlite_path")
    if not sqlite_path_raw:
        raise WorkspaceError("Workspace store.sqlite_path is required.")
    sqlite_path = _resolve_path(sqlite_path_raw, config_path)
    if sqlite_path is None:
        raise WorkspaceError("Workspace store.sqlite_path must be a string.")
    timeout = _positive_number(
        store_data.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS), "store.timeout_seconds"
    )
    return StoreConfig(sqlite_path=sqlite_path, timeout_seconds=timeout)


def _parse_rules(rules_data: Any, config_path: Path) -> RulesConfig:
    if rules_data is None:
        rules_data = {}
    if not isinstance(rules_data, dict):
        raise WorkspaceError("Invalid workspace rules configuration.")
    routing = _resolve_path(
        rules_data.get("routing_path", str(DEFAULT_ROUTING_RULES)), config_path
    )
    collision = _resolve_path(
        rules_data.get("collision_path", str(DEFAULT_COLLISION_RULES)), config_path
    )
    if routing is None or collision is None:
        raise WorkspaceError("Workspace rules paths must be strings.")
    return RulesConfig(routing_path=routing, collision_path=collision)


def _parse_scoring(scoring_data: Any) -> ScoringConfig:
    if scoring_data is None:
        return ScoringConfig()
    if not isinstance(scoring_data, dict):
        raise WorkspaceError("Invalid workspace scoring configuration.")
    batch_size = scoring_data.get("batch_size", DEFAULT_BATCH_SIZE)
    if not isinstance(batch_size, int) or isinstance(batch_size, bool) or batch_size < 1:
        raise WorkspaceError("Workspace scoring.batch_size must be a positive integer.")
    deadline = scoring_data.get("deadline_seconds", DEFAULT_DEADLINE_SECONDS)
    if deadline is not None:
        deadline = _positive_number(deadline, "scoring.deadline_seconds")
    return ScoringConfig(batch_size=batch_size, deadline_seconds=deadline)


def _parse_logging(logging_data: Any) -> LoggingConfig:
    if logging_data is None:
        return LoggingConfig()
    if not isinstance(logging_data, dict):
        raise WorkspaceError("Invalid workspace logging configuration.")
    level = str(logging_data.get("level", "INFO")).upper()
    if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise WorkspaceError(f"Unknown logging.level: {level}")
    return LoggingConfig(level=level, json=bool(logging_data.get("json", False)))


def _positive_number(value: Any, field: str) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
        raise WorkspaceError(f"Workspace {field} must be a positive number.")
    return float(value)


def _resolve_path(raw: Any, config_path: Path) -> Path | None:
    if not isinstance(raw, str):
        return None
    raw_path = Path(raw)
    if raw_path.is_absolute():
        return raw_path
    workspace_dir = config_path.parent
    first = raw_path.parts[0] if raw_path.parts else ""
    # Paths that start at the repo root ("workspaces/...", "resources/...") resolve from there.
    if first in (WORKSPACES_DIR.name, "resources"):
        return (workspace_dir.parent.parent / raw_path).resolve()
    return (workspace_dir / raw_path).resolve()
