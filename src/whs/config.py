from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

RunnerType = Literal["cli", "sdk"]
NotifierType = Literal["console", "none"]
BeadsMode = Literal["committed", "stealth"]

DEFAULT_KNOWN_AGENTS = [
    "implementation",
    "quality_review",
    "release_manager",
    "ux_specialist",
    "architect",
    "planner",
]


class ConfigError(ValueError):
    """Raised when the configuration file holds invalid values."""


@dataclass(slots=True)
class ProjectConfig:
    name: str
    repo_path: str
    base_branch: str = "main"
    agents_path: str = "docs/llm/agents"
    beads_mode: BeadsMode = "committed"
    entry_agent: str = ""

    @property
    def resolved_repo_path(self) -> Path:
        return Path(self.repo_path).expanduser().resolve()


@dataclass(slots=True)
class ConcurrencyConfig:
    max_total: int = 4
    max_per_project: int = 2


@dataclass(slots=True)
class RunnerConfig:
    type: RunnerType = "cli"
    binary: str = "claude"
    max_turns: int = 50
    model: str = ""


@dataclass(slots=True)
class DispatcherConfig:
    poll_interval_seconds: float = 5.0
    retry_backoff_seconds: float = 2.0
    max_step_retries: int = 1
    force_handoff: bool = True
    state_dir: str = ".whs"
    worktree_root: str = ""


@dataclass(slots=True)
class NotifierConfig:
    type: NotifierType = "console"


@dataclass(slots=True)
class AgentsConfig:
    known: list[str] = field(default_factory=lambda: list(DEFAULT_KNOWN_AGENTS))
    default_entry: str = "implementation"
    planning_entry: str = "planner"


@dataclass(slots=True)
class WhsConfig:
    projects: list[ProjectConfig] = field(default_factory=list)
    concurrency: ConcurrencyConfig = field(default_factory=ConcurrencyConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    notifier: NotifierConfig = field(default_factory=NotifierConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)

    @classmethod
    def default(cls) -> WhsConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> WhsConfig:
        try:
            config = cls(
                projects=[ProjectConfig(**item) for item in data.get("projects", [])],
                concurrency=ConcurrencyConfig(**data.get("concurrency", {})),
                runner=RunnerConfig(**data.get("runner", {})),
                dispatcher=DispatcherConfig(**data.get("dispatcher", {})),
                notifier=NotifierConfig(**data.get("notifier", {})),
                agents=AgentsConfig(**data.get("agents", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc
        config.validate()
        return config

    def validate(self) -> None:
        if self.concurrency.max_total < 1:
            raise ConfigError("concurrency.max_total must be at least 1.")
        if self.concurrency.max_per_project < 1:
            raise ConfigError("concurrency.max_per_project must be at least 1.")
        if self.runner.type not in {"cli", "sdk"}:
            raise ConfigError(f"Unknown runner type: {self.runner.type}")
        if self.notifier.type not in {"console", "none"}:
            raise ConfigError(f"Unknown notifier type: {self.notifier.type}")
        names = [project.name for project in self.projects]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ConfigError(f"Duplicate project names: {', '.join(duplicates)}")
        for project in self.projects:
            if project.beads_mode not in {"committed", "stealth"}:
                raise ConfigError(
                    f"Project '{project.name}' has unknown beads_mode: {project.beads_mode}"
                )

    def project(self, name: str) -> ProjectConfig | None:
        for project in self.projects:
            if project.name == name:
                return project
        return None

    def to_dict(self) -> dict:
        return {
            "concurrency": {
                "max_total": self.concurrency.max_total,
                "max_per_project": self.concurrency.max_per_project,
            },
            "runner": {
                "type": self.runner.type,
                "binary": self.runner.binary,
                "max_turns": self.runner.max_turns,
                "model": self.runner.model,
            },
            "dispatcher": {
                "poll_interval_seconds": self.dispatcher.poll_interval_seconds,
                "retry_backoff_seconds": self.dispatcher.retry_backoff_seconds,
                "max_step_retries": self.dispatcher.max_step_retries,
                "force_handoff": self.dispatcher.force_handoff,
                "state_dir": self.dispatcher.state_dir,
                "worktree_root": self.dispatcher.worktree_root,
            },
            "notifier": {
                "type": self.notifier.type,
            },
            "agents": {
                "known": list(self.agents.known),
                "default_entry": self.agents.default_entry,
                "planning_entry": self.agents.planning_entry,
            },
            "projects": [
                {
                    "name": project.name,
                    "repo_path": project.repo_path,
                    "base_branch": project.base_branch,
                    "agents_path": project.agents_path,
                    "beads_mode": project.beads_mode,
                    "entry_agent": project.entry_agent,
                }
                for project in self.projects
            ],
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: WhsConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["concurrency", "runner", "dispatcher", "notifier", "agents"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    for project in data["projects"]:
        lines.append("[[projects]]")
        for key, value in project.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> WhsConfig:
    if not path.exists():
        return WhsConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Could not parse {path}: {exc}") from exc
    return WhsConfig.from_dict(data)


def save_config(path: Path, config: WhsConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
