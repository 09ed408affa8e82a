from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field

REPO_ROOT = Path(__file__).resolve().parents[3]


def _env(name: str, default: str) -> str:
    return os.environ.get(name, default).strip()


class Settings(BaseModel):
    app_name: str = Field(default_factory=lambda: _env("APP_NAME", "tripquest"))
    store_backend: Literal["inmemory", "dynamodb"] = Field(
        default_factory=lambda: _env("STORE_BACKEND", "inmemory").lower()
    )
    ddb_table_name: str = Field(default_factory=lambda: _env("DDB_TABLE_NAME", ""))
    cors_origins: list[str] = Field(
        default_factory=lambda: [
            o.strip() for o in _env("CORS_ORIGINS", "*").split(",") if o.strip()
        ]
    )
    log_level: str = Field(default_factory=lambda: _env("LOG_LEVEL", "INFO").upper())
    invite_code_length: int = Field(
        default_factory=lambda: int(_env("INVITE_CODE_LENGTH", "6")), ge=4, le=12
    )


def load_settings(env_path: Path | None = None) -> Settings:
    """config/.env を読み込んでから環境変数で設定を組み立てる。"""

    env_path = env_path or REPO_ROOT / "config" / ".env"
    if env_path.exists():
        load_dotenv(dotenv_path=env_path, override=False)
    return Settings()
