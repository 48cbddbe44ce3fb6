# settings.py
from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

STATE_DIR = os.environ.get("JOBWAVE_STATE_DIR", ".jobwave/state")
DATABASE_URL = os.environ.get("JOBWAVE_DATABASE_URL")  # e.g. sqlite:///.jobwave/state.db
CONFIG_FILE = os.environ.get("JOBWAVE_CONFIG", "jobwave.json")


def _env_int(name: str) -> Optional[int]:
    raw = os.environ.get(name)
    return int(raw) if raw else None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class RunOptions:
    """Resolved options for one execute() call."""
    concurrent: bool = True
    max_workers: Optional[int] = None
    auto_resolve: bool = False
    halt_on_failure: bool = True
    fail_fast: bool = False
    default_timeout: Optional[float] = None
    retry_failed: bool = False
    systemic_min_jobs: int = 2
    decision_defaults: Dict[str, str] = field(default_factory=dict)
    allow_failed: List[str] = field(default_factory=list)

    @classmethod
    def from_env(cls) -> RunOptions:
        return cls(
            max_workers=_env_int("JOBWAVE_MAX_WORKERS"),
            auto_resolve=_env_bool("JOBWAVE_AUTO_RESOLVE", False),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> RunOptions:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def merged(self, **overrides: Any) -> RunOptions:
        """Copy with every non-None override applied."""
        data = self.to_dict()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return RunOptions.from_dict(data)


class ConfigFile(BaseModel):
    """Schema of jobwave.json. Unknown keys are rejected so typos surface."""
    model_config = ConfigDict(extra="forbid")

    concurrent: Optional[bool] = None
    max_workers: Optional[int] = Field(default=None, ge=1)
    auto_resolve: Optional[bool] = None
    halt_on_failure: Optional[bool] = None
    fail_fast: Optional[bool] = None
    retry_failed: Optional[bool] = None
    default_timeout: Optional[float] = Field(default=None, gt=0)
    systemic_min_jobs: Optional[int] = Field(default=None, ge=1)
    decision_defaults: Optional[Dict[str, str]] = None
    allow_failed: Optional[List[str]] = None
    state_dir: Optional[str] = None
    database_url: Optional[str] = None

    @field_validator("state_dir")
    @classmethod
    def _not_blank(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            raise ValueError("state_dir must not be blank")
        return v


def load_config(path: str | Path | None = None) -> ConfigFile:
    """
    Read jobwave.json if present. A missing file is an empty config; a
    malformed one raises pydantic.ValidationError.
    """
    cfg_path = Path(path or CONFIG_FILE)
    if not cfg_path.exists():
        return ConfigFile()
    return ConfigFile.model_validate_json(cfg_path.read_text(encoding="utf-8"))


def resolve_options(config: Optional[ConfigFile] = None, **cli_overrides: Any) -> RunOptions:
    """Environment < config file < CLI flags."""
    opts = RunOptions.from_env()
    if config is not None:
        file_values = config.model_dump(exclude_none=True, exclude={"state_dir", "database_url"})
        opts = opts.merged(**file_values)
    return opts.merged(**cli_overrides)
