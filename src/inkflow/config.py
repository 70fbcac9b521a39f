from __future__ import annotations

import json
import tomllib
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Literal

SubmitPolicy = Literal["reject", "replace"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]
RecordsTarget = Literal["server", "local"]


@dataclass(slots=True)
class ServerConfig:
    base_url: str = "http://127.0.0.1:3000/api"
    api_token: str = ""
    timeout_seconds: float = 30.0


@dataclass(slots=True)
class PollingConfig:
    agent_interval_seconds: float = 1.0
    planner_interval_seconds: float = 1.0


@dataclass(slots=True)
class ReviewConfig:
    auto_accept: bool = False


@dataclass(slots=True)
class SessionConfig:
    submit_policy: SubmitPolicy = "reject"


@dataclass(slots=True)
class AgentConfig:
    model_ref: str = ""
    project_ref: str = ""


@dataclass(slots=True)
class StateConfig:
    directory: str = ".inkflow"
    records: RecordsTarget = "server"


@dataclass(slots=True)
class LoggingConfig:
    level: LogLevel = "WARNING"


@dataclass(slots=True)
class InkflowConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    state: StateConfig = field(default_factory=StateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> InkflowConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> InkflowConfig:
        sections = {}
        for section in fields(cls):
            section_type = SECTION_TYPES[section.name]
            sections[section.name] = section_type(**data.get(section.name, {}))
        return cls(**sections)

    def to_dict(self) -> dict:
        return asdict(self)


SECTION_TYPES: dict[str, type] = {
    "server": ServerConfig,
    "polling": PollingConfig,
    "review": ReviewConfig,
    "session": SessionConfig,
    "agent": AgentConfig,
    "state": StateConfig,
    "logging": LoggingConfig,
}


def _format_scalar(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        text = f"{value:.3f}".rstrip("0")
        return text + "0" if text.endswith(".") else text
    if isinstance(value, int):
        return str(value)
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: InkflowConfig) -> str:
    """Render the config as TOML, one table per section in declaration order."""
    tables = []
    for section, values in config.to_dict().items():
        body = "\n".join(f"{key} = {_format_scalar(value)}" for key, value in values.items())
        tables.append(f"[{section}]\n{body}")
    return "\n\n".join(tables) + "\n"


def load_config(path: Path) -> InkflowConfig:
    if not path.exists():
        return InkflowConfig.default()
    with path.open("rb") as handle:
        return InkflowConfig.from_dict(tomllib.load(handle))


def save_config(path: Path, config: InkflowConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
