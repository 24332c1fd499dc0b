from __future__ import annotations

import os
from typing import Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError

ENV_PREFIX = "CIFLOW_"


class Settings(BaseModel):
    database_url: str = "sqlite:///.ciflow/runs.db"
    max_workers: Optional[int] = Field(default=None, ge=1)
    provision_retries: int = Field(default=3, ge=0)
    provision_backoff: float = Field(default=2.0, ge=0)
    workflows_dir: str = "."
    artifacts_dir: str = ".ciflow/artifacts"
    artifacts_url: Optional[str] = None
    artifacts_token: Optional[str] = None
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Read CIFLOW_* variables (e.g. CIFLOW_MAX_WORKERS=4)."""
        environ = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is not None and raw != "":
                values[name] = raw
        try:
            return cls.model_validate(values)
        except ValidationError as e:
            raise ConfigError(
                message="Invalid CIFLOW_* environment settings",
                details={"errors": "; ".join(f"{err['loc'][0]}: {err['msg']}" for err in e.errors())},
            ) from e
