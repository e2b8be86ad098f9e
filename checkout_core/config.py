from __future__ import annotations

import os
from typing import Mapping, Optional

from pydantic import BaseModel, Field


class Settings(BaseModel):
    database_url: str = "sqlite:///checkout.db"
    # Upper bound for every call to the payment processor, seconds.
    processor_timeout: float = Field(10.0, gt=0)
    # Worker threads per gateway; a call that times out holds its worker until it returns.
    processor_workers: int = Field(4, gt=0)
    default_currency: str = "usd"
    echo_sql: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from ``CHECKOUT_*`` variables, falling back to defaults."""
        env = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            key = f"CHECKOUT_{name.upper()}"
            if key in env:
                values[name] = env[key]
        return cls.model_validate(values)
