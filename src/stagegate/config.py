from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Literal

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]


@dataclass(frozen=True, slots=True)
class Conventions:
    """Process-wide layout conventions shared by every profile and pipeline."""

    layout: MappingProxyType = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Conventions:
        return cls(layout=MappingProxyType({str(k): str(v) for k, v in data.items()}))

    def expand(self, pattern: str) -> str:
        """Substitute ``{name}`` placeholders; unknown names are left untouched."""
        rendered = pattern
        for key, value in self.layout.items():
            rendered = rendered.replace("{" + key + "}", value)
        return rendered

    def to_dict(self) -> dict[str, str]:
        return dict(self.layout)


@dataclass(slots=True)
class EngineConfig:
    max_retries: int = 2
    stage_timeout_seconds: float = 900.0
    max_parallel_stages: int = 4
    lease_ttl_seconds: float = 60.0


@dataclass(slots=True)
class PathsConfig:
    pipeline: str = "pipeline.toml"
    profiles_dir: str = "agents"
    state_dir: str = ".stagegate"


@dataclass(slots=True)
class LoggingConfig:
    level: LogLevel = "INFO"


@dataclass(slots=True)
class StagegateConfig:
    engine: EngineConfig = field(default_factory=EngineConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    conventions: dict[str, str] = field(
        default_factory=lambda: {"source": "src", "tests": "test", "docs": "docs"}
    )
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> StagegateConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> StagegateConfig:
        default = cls()
        return cls(
            engine=EngineConfig(**data.get("engine", {})),
            paths=PathsConfig(**data.get("paths", {})),
            conventions={
                str(key): str(value)
                for key, value in data.get("conventions", default.conventions).items()
            },
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "engine": {
                "max_retries": self.engine.max_retries,
                "stage_timeout_seconds": self.engine.stage_timeout_seconds,
                "max_parallel_stages": self.engine.max_parallel_stages,
                "lease_ttl_seconds": self.engine.lease_ttl_seconds,
            },
            "paths": {
                "pipeline": self.paths.pipeline,
                "profiles_dir": self.paths.profiles_dir,
                "state_dir": self.paths.state_dir,
            },
            "conventions": dict(self.conventions),
            "logging": {
                "level": self.logging.level,
            },
        }

    def shared_conventions(self) -> Conventions:
        return Conventions.from_dict(self.conventions)


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: StagegateConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["engine", "paths", "conventions", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> StagegateConfig:
    if not path.exists():
        return StagegateConfig.default()
    return StagegateConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: StagegateConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
