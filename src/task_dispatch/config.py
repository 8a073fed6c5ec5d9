"""Runtime configuration for the dispatch harness."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse


class ConfigError(ValueError):
    """Configuration is missing or malformed; the harness cannot start."""


@dataclass(slots=True)
class StoreSettings:
    """Notion task database settings."""

    token: str = ""
    database_id: str = ""
    api_base_url: str = "https://api.notion.com/v1"
    api_version: str = "2025-09-03"
    status_property: str = "Status"
    agent_property: str = "Agent"
    project_property: str = "Project"
    pending_status: str = "Todo"
    active_status: str = "In Progress"
    done_status: str = "Done"
    request_timeout_seconds: float = 30.0


@dataclass(slots=True)
class RunnerSettings:
    """opencode server settings."""

    base_url: str = "http://localhost:4096"
    model_provider: str = "google"
    model_id: str = "gemini-3-flash-preview"
    request_timeout_seconds: float = 60.0


@dataclass(slots=True)
class SchedulerSettings:
    """When to scan and who to scan for."""

    check_interval_minutes: float = 30.0
    agent_name: str = "OpenCode"
    default_reassign_to: str = "YourName"
    trigger_file: Path = Path(".trigger")
    trigger_poll_seconds: float = 1.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by collaborator."""

    store: StoreSettings = field(default_factory=StoreSettings)
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    project_mappings: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults matching a local opencode server."""

        return cls(
            store=StoreSettings(
                token=os.getenv("NOTION_TOKEN", "").strip(),
                database_id=os.getenv("NOTION_DATABASE_ID", "").strip(),
                api_base_url=os.getenv("NOTION_API_BASE_URL", "https://api.notion.com/v1"),
                api_version=os.getenv("NOTION_API_VERSION", "2025-09-03"),
                status_property=os.getenv("NOTION_STATUS_PROPERTY", "Status"),
                agent_property=os.getenv("NOTION_AGENT_PROPERTY", "Agent"),
                project_property=os.getenv("NOTION_PROJECT_PROPERTY", "Project"),
                pending_status=os.getenv("NOTION_STATUS_PENDING", "Todo"),
                active_status=os.getenv("NOTION_STATUS_ACTIVE", "In Progress"),
                done_status=os.getenv("NOTION_STATUS_DONE", "Done"),
                request_timeout_seconds=_env_float("NOTION_REQUEST_TIMEOUT_SECONDS", "30.0"),
            ),
            runner=RunnerSettings(
                base_url=os.getenv("OPENCODE_BASE_URL", "http://localhost:4096"),
                model_provider=os.getenv("OPENCODE_MODEL_PROVIDER", "google"),
                model_id=os.getenv("OPENCODE_MODEL_ID", "gemini-3-flash-preview"),
                request_timeout_seconds=_env_float("OPENCODE_REQUEST_TIMEOUT_SECONDS", "60.0"),
            ),
            scheduler=SchedulerSettings(
                check_interval_minutes=_env_float("CHECK_INTERVAL_MINUTES", "30"),
                agent_name=os.getenv("OPENCODE_AGENT_NAME", "OpenCode"),
                default_reassign_to=os.getenv("DEFAULT_REASSIGN_TO", "YourName"),
                trigger_file=trigger_file_from_env(),
                trigger_poll_seconds=_env_float("TRIGGER_POLL_SECONDS", "1.0"),
            ),
            project_mappings=_parse_project_mappings(os.getenv("PROJECT_MAPPINGS", "")),
        )

    def validate(self) -> None:
        """Raise ConfigError if the harness cannot run with these settings."""

        missing = [
            name
            for name, value in (
                ("NOTION_TOKEN", self.store.token),
                ("NOTION_DATABASE_ID", self.store.database_id),
            )
            if not value
        ]
        if missing:
            raise ConfigError(f"Missing required environment variables: {', '.join(missing)}.")
        if not self.project_mappings:
            raise ConfigError("No project mappings configured. Set PROJECT_MAPPINGS.")
        if self.scheduler.check_interval_minutes <= 0:
            raise ConfigError("CHECK_INTERVAL_MINUTES must be > 0.")
        if self.scheduler.trigger_poll_seconds <= 0:
            raise ConfigError("TRIGGER_POLL_SECONDS must be > 0.")
        if self.store.request_timeout_seconds <= 0:
            raise ConfigError("NOTION_REQUEST_TIMEOUT_SECONDS must be > 0.")
        if self.runner.request_timeout_seconds <= 0:
            raise ConfigError("OPENCODE_REQUEST_TIMEOUT_SECONDS must be > 0.")
        if not self.scheduler.agent_name.strip():
            raise ConfigError("OPENCODE_AGENT_NAME must not be empty.")
        _validate_http_url("OPENCODE_BASE_URL", self.runner.base_url)
        _validate_http_url("NOTION_API_BASE_URL", self.store.api_base_url)

    @property
    def check_interval_seconds(self) -> float:
        return self.scheduler.check_interval_minutes * 60


def trigger_file_from_env() -> Path:
    """Marker file path alone, without parsing the rest of the environment."""

    return Path(os.getenv("TRIGGER_FILE", ".trigger"))


def _parse_project_mappings(raw: str) -> dict[str, str]:
    raw = raw.strip()
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ConfigError("Invalid PROJECT_MAPPINGS JSON format.") from error
    if not isinstance(parsed, dict):
        raise ConfigError(
            "Invalid PROJECT_MAPPINGS: expected a JSON object of project name to path.",
        )

    mappings: dict[str, str] = {}
    for project, path in parsed.items():
        if not isinstance(path, str):
            raise ConfigError(
                f"Invalid PROJECT_MAPPINGS value for {project!r}: {path!r} (expected a string).",
            )
        if path.strip():
            mappings[project] = path.strip()
    return mappings


def _validate_http_url(name: str, value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ConfigError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_float(name: str, default: str) -> float:
    value = os.getenv(name, default)
    try:
        return float(value)
    except ValueError as error:
        raise ConfigError(f"Invalid numeric value for {name}: {value!r}") from error
