"""
Order Service — 設定

環境変数から読み込むチューニング項目をまとめる。
接続先 (DATABASE_URL / REDIS_URL) は main.py が直接読む。
"""

import os
from functools import lru_cache

from pydantic import BaseModel, Field


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    max_retries: int = Field(default=3, ge=1)
    persistence_timeout: float = Field(default=5.0, gt=0)
    audit_allow_caller_timestamps: bool = False
    sweep_interval_seconds: float = Field(default=60.0, ge=0)
    create_schema: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: dict | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            max_retries=int(env.get("ORDER_MAX_RETRIES", "3")),
            persistence_timeout=float(env.get("PERSISTENCE_TIMEOUT_SECONDS", "5.0")),
            audit_allow_caller_timestamps=_as_bool(
                env.get("AUDIT_ALLOW_CALLER_TIMESTAMPS", "false")
            ),
            sweep_interval_seconds=float(env.get("CREDIT_SWEEP_INTERVAL_SECONDS", "60")),
            create_schema=_as_bool(env.get("CREATE_SCHEMA", "false")),
            log_level=env.get("LOG_LEVEL", "INFO"),
        )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
