"""Configuration management for rgpanel."""

from pathlib import Path
from typing import List, Optional

import yaml
from loguru import logger
from pydantic import BaseModel, Field, field_validator

from .models import CaseMode, DirOrigin


class SearchConfig(BaseModel):
    command: List[str] = Field(default_factory=lambda: ["rg"])
    extra_args: List[str] = Field(default_factory=list)
    read_chunk_bytes: int = 65536

    @field_validator('command')
    @classmethod
    def validate_command(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("command must name the search tool")
        return v

    @field_validator('read_chunk_bytes')
    @classmethod
    def validate_chunk(cls, v: int) -> int:
        if v < 1:
            raise ValueError("read_chunk_bytes must be positive")
        return v


class DisplayConfig(BaseModel):
    prompt: str = "rg> "
    max_results: int = 200
    omitted_marker: str = "...more results omitted"

    @field_validator('max_results')
    @classmethod
    def validate_max_results(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_results must be at least 1")
        return v


class ThrottleConfig(BaseModel):
    initial_delay_ms: int = 10
    interval_ms: int = 200

    @field_validator('initial_delay_ms', 'interval_ms')
    @classmethod
    def validate_delay(cls, v: int) -> int:
        if v < 0:
            raise ValueError("throttle delays must not be negative")
        return v

    @property
    def initial_delay(self) -> float:
        return self.initial_delay_ms / 1000.0

    @property
    def interval(self) -> float:
        return self.interval_ms / 1000.0


class DefaultsConfig(BaseModel):
    case_mode: CaseMode = CaseMode.SMART
    regex: bool = True
    word: bool = False
    directory_origin: DirOrigin = DirOrigin.DOC


class LoggingConfig(BaseModel):
    level: str = "WARNING"
    file: bool = True


class Config(BaseModel):
    """Main configuration for rgpanel sessions."""

    search: SearchConfig = Field(default_factory=SearchConfig)
    display: DisplayConfig = Field(default_factory=DisplayConfig)
    throttle: ThrottleConfig = Field(default_factory=ThrottleConfig)
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Config":
        """Load configuration from YAML file, falling back to defaults."""
        if config_path is None:
            candidates = [
                Path("rgpanel.yaml"),
                Path.home() / ".config" / "rgpanel" / "config.yaml",
                Path("/etc/rgpanel/config.yaml"),
            ]
            for candidate in candidates:
                if candidate.exists():
                    config_path = candidate
                    break
            else:
                logger.debug("No config file found, using defaults")
                return cls()
        elif not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        logger.info(f"Loading config from: {config_path}")
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    def save(self, config_path: Path) -> None:
        """Save configuration to YAML file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, 'w') as f:
            yaml.safe_dump(self.model_dump(mode="json"), f, default_flow_style=False)
