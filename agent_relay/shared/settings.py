"""Runtime settings: project-local state layout, agent command, and gate limits."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

CONFIG_FILENAME = "relay.yaml"
STATE_DIRNAME = ".relay"
DEFAULT_REVIEWS_DIR = "docs/development/reviews"

DEFAULT_AGENT_COMMAND = (
    "claude",
    "-p",
    "{prompt}",
    "--output-format",
    "stream-json",
    "--verbose",
)
DEFAULT_MODEL_ARGS = ("--model", "{model}")
DEFAULT_RESUME_ARGS = ("--resume", "{session_id}")


class AgentConfigFile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    command: list[str] | None = Field(default=None, min_length=1)
    model_args: list[str] | None = None
    resume_args: list[str] | None = None
    author_model: str | None = None
    reviewer_model: str | None = None
    timeout_seconds: float | None = Field(default=None, gt=0)
    kill_grace_seconds: float | None = Field(default=None, ge=0)
    drain_timeout_seconds: float | None = Field(default=None, ge=0)
    stdin_replies: bool | None = None


class ViewerConfigFile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    command: list[str] | None = None
    url: str | None = None


class RelayConfigFile(BaseModel):
    """Schema of ``relay.yaml``; every key is optional."""

    model_config = ConfigDict(extra="forbid")

    agent: AgentConfigFile = Field(default_factory=AgentConfigFile)
    viewer: ViewerConfigFile = Field(default_factory=ViewerConfigFile)
    quality_gates: list[str] | None = None
    quality_timeout_seconds: float | None = Field(default=None, gt=0)
    reviews_dir: str | None = None
    max_review_iterations: int | None = Field(default=None, ge=1)
    max_quality_retries: int | None = Field(default=None, ge=0)


@dataclass(frozen=True)
class AgentSettings:
    command: tuple[str, ...] = DEFAULT_AGENT_COMMAND
    model_args: tuple[str, ...] = DEFAULT_MODEL_ARGS
    resume_args: tuple[str, ...] = DEFAULT_RESUME_ARGS
    author_model: str | None = None
    reviewer_model: str | None = None
    timeout_seconds: float = 300.0
    kill_grace_seconds: float = 2.0
    drain_timeout_seconds: float = 1.0
    stdin_replies: bool = False


@dataclass(frozen=True)
class RelaySettings:
    """Filesystem locations and runtime limits for one project checkout."""

    project_root: Path
    state_dir: Path
    db_path: Path
    log_dir: Path
    lock_dir: Path
    agent: AgentSettings = field(default_factory=AgentSettings)
    quality_gates: tuple[str, ...] = ()
    quality_timeout_seconds: float = 300.0
    max_review_iterations: int = 5
    max_quality_retries: int = 3
    reviews_dir: Path | None = None
    viewer_command: tuple[str, ...] = ()
    viewer_url: str = ""

    @classmethod
    def from_env(
        cls, env: Mapping[str, str] | None = None, project_root: Path | None = None
    ) -> "RelaySettings":
        source = os.environ if env is None else env
        root = (project_root or Path.cwd()).resolve()
        state_dir = Path(source.get("RELAY_HOME", str(root / STATE_DIRNAME)))
        db_path = Path(source.get("RELAY_DB_PATH", str(state_dir / "relay.db")))
        log_dir = Path(source.get("RELAY_LOG_DIR", str(state_dir / "logs")))
        agent = AgentSettings()
        if source.get("RELAY_AGENT_TIMEOUT"):
            agent = replace(agent, timeout_seconds=float(source["RELAY_AGENT_TIMEOUT"]))
        if source.get("RELAY_AUTHOR_MODEL"):
            agent = replace(agent, author_model=source["RELAY_AUTHOR_MODEL"])
        if source.get("RELAY_REVIEWER_MODEL"):
            agent = replace(agent, reviewer_model=source["RELAY_REVIEWER_MODEL"])
        return cls(
            project_root=root,
            state_dir=state_dir,
            db_path=db_path,
            log_dir=log_dir,
            lock_dir=state_dir / "locks",
            agent=agent,
            reviews_dir=root / DEFAULT_REVIEWS_DIR,
        )

    def ensure_directories(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.log_dir.chmod(0o700)
        self.lock_dir.mkdir(parents=True, exist_ok=True)


def load_config_file(path: Path) -> RelayConfigFile:
    if not path.exists():
        return RelayConfigFile()
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ValueError(f"{path}: invalid YAML: {exc}") from exc
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    try:
        return RelayConfigFile.model_validate(raw)
    except ValidationError as exc:
        raise ValueError(f"{path}: {exc}") from exc


def _overlay(settings: RelaySettings, config: RelayConfigFile, env: Mapping[str, str]) -> RelaySettings:
    agent_updates: dict[str, Any] = {}
    file_agent = config.agent
    if file_agent.command is not None:
        agent_updates["command"] = tuple(file_agent.command)
    if file_agent.model_args is not None:
        agent_updates["model_args"] = tuple(file_agent.model_args)
    if file_agent.resume_args is not None:
        agent_updates["resume_args"] = tuple(file_agent.resume_args)
    for name in ("kill_grace_seconds", "drain_timeout_seconds", "stdin_replies"):
        value = getattr(file_agent, name)
        if value is not None:
            agent_updates[name] = value
    # Env-provided values already live on settings.agent and win over the file.
    if file_agent.timeout_seconds is not None and not env.get("RELAY_AGENT_TIMEOUT"):
        agent_updates["timeout_seconds"] = file_agent.timeout_seconds
    if file_agent.author_model is not None and not env.get("RELAY_AUTHOR_MODEL"):
        agent_updates["author_model"] = file_agent.author_model
    if file_agent.reviewer_model is not None and not env.get("RELAY_REVIEWER_MODEL"):
        agent_updates["reviewer_model"] = file_agent.reviewer_model

    updates: dict[str, Any] = {"agent": replace(settings.agent, **agent_updates)}
    if config.quality_gates is not None:
        updates["quality_gates"] = tuple(config.quality_gates)
    for name in ("quality_timeout_seconds", "max_review_iterations", "max_quality_retries"):
        value = getattr(config, name)
        if value is not None:
            updates[name] = value
    if config.reviews_dir is not None:
        updates["reviews_dir"] = settings.project_root / config.reviews_dir
    if config.viewer.command is not None:
        updates["viewer_command"] = tuple(config.viewer.command)
    if config.viewer.url is not None:
        updates["viewer_url"] = config.viewer.url
    return replace(settings, **updates)


def get_relay_settings(
    project_root: Path | None = None, env: dict[str, str] | None = None
) -> RelaySettings:
    """Defaults, then ``relay.yaml``, then environment; directories created."""

    source = os.environ if env is None else env
    settings = RelaySettings.from_env(source, project_root)
    settings = _overlay(settings, load_config_file(settings.project_root / CONFIG_FILENAME), source)
    settings.ensure_directories()
    return settings
