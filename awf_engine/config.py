"""Runtime settings.

Values come from the process environment, after an optional `.env` file at the
project root has been loaded. Every setting has a default so the engine boots
with no configuration at all.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict

from awf_engine.llm import ProviderFormat

ROOT = Path(__file__).parent.parent

_TRUE = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUE


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    return int(raw) if raw.strip() else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    return float(raw) if raw.strip() else default


class Settings(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    env: Literal["development", "production", "test"] = "development"
    allow_unknown_actions: bool = False
    strict_registry: bool = False
    max_tokens: int = 8000
    soft_budget_per_slot_tokens: int = 2000
    max_active_npcs: int = 5
    model_timeout: float = 60.0
    model_url: str = "http://localhost:5001"
    model_api_key: str = ""
    model_format: ProviderFormat = "koboldcpp"
    model_name: str = ""
    locale: str = "en-US"
    data_dir: Path = ROOT / "data"

    @classmethod
    def from_env(cls, env_file: Path | None = None) -> Settings:
        """Build settings from the environment.

        `AWF_STRICT_REGISTRY` defaults to on in production and off elsewhere,
        so a duplicate action registration fails loudly only where it matters.
        """
        load_dotenv(env_file or ROOT / ".env")
        env = os.getenv("AWF_ENV", "development").strip().lower() or "development"
        return cls(
            env=env,
            allow_unknown_actions=_env_bool("ALLOW_UNKNOWN_ACTIONS", False),
            strict_registry=_env_bool("AWF_STRICT_REGISTRY", env == "production"),
            max_tokens=_env_int("AWF_MAX_TOKENS", 8000),
            soft_budget_per_slot_tokens=_env_int("PROMPT_SOFT_BUDGET_PER_SLOT_TOKENS", 2000),
            max_active_npcs=_env_int("AWF_MAX_ACTIVE_NPCS", 5),
            model_timeout=_env_float("AWF_MODEL_TIMEOUT", 60.0),
            model_url=os.getenv("AWF_MODEL_URL", "http://localhost:5001"),
            model_api_key=os.getenv("AWF_MODEL_API_KEY", ""),
            model_format=os.getenv("AWF_MODEL_FORMAT", "koboldcpp"),
            model_name=os.getenv("AWF_MODEL_NAME", ""),
            locale=os.getenv("AWF_LOCALE", "en-US"),
            data_dir=Path(os.getenv("DATA_DIR", str(ROOT / "data"))),
        )
