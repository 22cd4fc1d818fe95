"""
provisio/models/settings.py

EngineSettings: configuration for planning, applying and rendering. Values come
from defaults, an optional YAML file (provisio.yaml) and CLI overrides.
"""

from __future__ import annotations

import os
import platform
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field
from pydantic.functional_validators import model_validator


def _default_host_os() -> str:
    return platform.system().lower() or "linux"


class EngineSettings(BaseModel):
    """Engine configuration.

    Attributes:
        parallelism: Maximum number of actions applied concurrently.
        max_attempts: Attempts per provider call before giving up on transient errors.
        base_delay: First backoff delay in seconds; doubles on every retry.
        max_delay: Upper bound on a single backoff delay.
        jitter: Randomize each delay between half and full length.
        host_os: Selects local template variants ('linux', 'darwin', 'windows').
        state_backend: Where state is kept: 'local' file or 'minio' object.
        state_path: Directory for local state files.
        minio_endpoint / minio_bucket / minio_access_key / minio_secret_key /
        minio_secure: MinIO connection details for the 'minio' backend.
    """

    parallelism: int = Field(default=4, ge=1)
    max_attempts: int = Field(default=5, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    jitter: bool = True
    host_os: str = Field(default_factory=_default_host_os)
    state_backend: Literal["local", "minio"] = "local"
    state_path: str = ".provisio"
    minio_endpoint: Optional[str] = None
    minio_bucket: str = "provisio"
    minio_access_key: Optional[str] = Field(
        default_factory=lambda: os.environ.get("MINIO_ACCESS_KEY")
    )
    minio_secret_key: Optional[str] = Field(
        default_factory=lambda: os.environ.get("MINIO_SECRET_KEY")
    )
    minio_secure: bool = True

    @model_validator(mode="after")
    def check_backend(self) -> EngineSettings:
        """The minio backend needs an endpoint and both credentials."""
        if self.state_backend == "minio":
            missing = [
                name
                for name in ("minio_endpoint", "minio_access_key", "minio_secret_key")
                if not getattr(self, name)
            ]
            if missing:
                raise ValueError(
                    f"state_backend 'minio' requires: {', '.join(missing)}"
                )
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must not be smaller than base_delay.")
        return self

    @classmethod
    def from_yaml(cls, yaml_str: str, **overrides: Any) -> EngineSettings:
        """Build settings from a YAML document; non-None overrides win."""
        data: Dict[str, Any] = yaml.safe_load(yaml_str) or {}
        if not isinstance(data, dict):
            raise ValueError("settings file must contain a mapping")
        data.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(data)

    @classmethod
    def load(cls, path: Optional[str] = None, **overrides: Any) -> EngineSettings:
        """Read settings from `path` if it exists, applying overrides."""
        if path and os.path.isfile(path):
            with open(path, "r", encoding="utf-8") as f:
                return cls.from_yaml(f.read(), **overrides)
        return cls.model_validate({k: v for k, v in overrides.items() if v is not None})
