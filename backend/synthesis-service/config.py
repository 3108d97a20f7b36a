"""
Synthesis Service - Runtime Configuration

Settings are read once from SYNTHESIS_* environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

SERVICE_DIR = Path(__file__).resolve().parent
MOCK_DB_DIR = SERVICE_DIR / "mock_db"

GATEWAY_MODES = {"http", "local"}
RETRIEVAL_MODES = {"off", "local", "http"}
CASE_STORE_BACKENDS = {"sqlite", "memory"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_str(name: str, default: str) -> str:
    return (os.getenv(name, default) or default).strip()


@dataclass(frozen=True)
class GenerationConfig:
    """Per-call model parameters handed to every gateway invocation."""

    model_id: str = "google/medgemma-4b-it"
    max_tokens: int = 2048
    temperature: float = 0.2
    timeout_seconds: float = 60.0


@dataclass(frozen=True)
class ServiceSettings:
    gateway_mode: str = "http"
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    gateway_base_url: str = "http://localhost:8080"
    gateway_path: str = "/v1/messages"
    gateway_api_key: Optional[str] = None
    local_device: str = "auto"
    local_files_only: bool = True

    retrieval_mode: str = "local"
    knowledge_base_id: str = "clinical-guidelines"
    knowledge_base_url: str = "http://localhost:8090"
    guidelines_path: Path = MOCK_DB_DIR / "guidelines.json"
    retrieval_max_results: int = 5
    retrieval_timeout_seconds: float = 8.0
    retrieval_cache_ttl_seconds: int = 3600

    case_store_backend: str = "sqlite"
    sqlite_db_path: str = "./local_data/synthesis.sqlite3"
    seed_path: Path = MOCK_DB_DIR / "clinic_seed.json"
    seed_on_start: bool = True

    analyze_timeout_seconds: float = 300.0
    expose_errors: bool = True

    def __post_init__(self) -> None:
        if self.gateway_mode not in GATEWAY_MODES:
            raise ValueError(
                f"Unsupported SYNTHESIS_GATEWAY_MODE={self.gateway_mode}. Use one of {sorted(GATEWAY_MODES)}."
            )
        if self.retrieval_mode not in RETRIEVAL_MODES:
            raise ValueError(
                f"Unsupported SYNTHESIS_RETRIEVAL_MODE={self.retrieval_mode}. Use one of {sorted(RETRIEVAL_MODES)}."
            )
        if self.case_store_backend not in CASE_STORE_BACKENDS:
            raise ValueError(
                f"Unsupported SYNTHESIS_CASE_STORE_BACKEND={self.case_store_backend}. "
                f"Use one of {sorted(CASE_STORE_BACKENDS)}."
            )

    @classmethod
    def from_env(cls) -> "ServiceSettings":
        generation = GenerationConfig(
            model_id=_env_str("SYNTHESIS_MODEL_ID", GenerationConfig.model_id),
            max_tokens=max(64, _env_int("SYNTHESIS_MAX_TOKENS", GenerationConfig.max_tokens)),
            temperature=min(1.0, max(0.0, _env_float("SYNTHESIS_TEMPERATURE", GenerationConfig.temperature))),
            timeout_seconds=max(5.0, _env_float("SYNTHESIS_MODEL_TIMEOUT_SECONDS", GenerationConfig.timeout_seconds)),
        )
        local_data_dir = Path(_env_str("SYNTHESIS_LOCAL_DATA_DIR", "./local_data")).expanduser()
        sqlite_default = str(local_data_dir / "synthesis.sqlite3")
        return cls(
            gateway_mode=_env_str("SYNTHESIS_GATEWAY_MODE", cls.gateway_mode).lower(),
            generation=generation,
            gateway_base_url=_env_str("SYNTHESIS_GATEWAY_BASE_URL", cls.gateway_base_url).rstrip("/"),
            gateway_path=_env_str("SYNTHESIS_GATEWAY_PATH", cls.gateway_path),
            gateway_api_key=(os.getenv("SYNTHESIS_GATEWAY_API_KEY") or "").strip() or None,
            local_device=_env_str("SYNTHESIS_LOCAL_DEVICE", cls.local_device).lower(),
            local_files_only=_env_bool("SYNTHESIS_LOCAL_FILES_ONLY", cls.local_files_only),
            retrieval_mode=_env_str("SYNTHESIS_RETRIEVAL_MODE", cls.retrieval_mode).lower(),
            knowledge_base_id=_env_str("SYNTHESIS_KNOWLEDGE_BASE_ID", cls.knowledge_base_id),
            knowledge_base_url=_env_str("SYNTHESIS_KNOWLEDGE_BASE_URL", cls.knowledge_base_url).rstrip("/"),
            guidelines_path=Path(
                _env_str("SYNTHESIS_GUIDELINES_PATH", str(MOCK_DB_DIR / "guidelines.json"))
            ).expanduser(),
            retrieval_max_results=max(1, _env_int("SYNTHESIS_RETRIEVAL_MAX_RESULTS", cls.retrieval_max_results)),
            retrieval_timeout_seconds=max(
                1.0, _env_float("SYNTHESIS_RETRIEVAL_TIMEOUT_SECONDS", cls.retrieval_timeout_seconds)
            ),
            retrieval_cache_ttl_seconds=max(
                30, _env_int("SYNTHESIS_RETRIEVAL_CACHE_TTL_SECONDS", cls.retrieval_cache_ttl_seconds)
            ),
            case_store_backend=_env_str("SYNTHESIS_CASE_STORE_BACKEND", cls.case_store_backend).lower(),
            sqlite_db_path=_env_str("SYNTHESIS_SQLITE_DB_PATH", sqlite_default),
            seed_path=Path(_env_str("SYNTHESIS_SEED_PATH", str(MOCK_DB_DIR / "clinic_seed.json"))).expanduser(),
            seed_on_start=_env_bool("SYNTHESIS_SEED_ON_START", cls.seed_on_start),
            analyze_timeout_seconds=max(
                30.0, _env_float("SYNTHESIS_ANALYZE_TIMEOUT_SECONDS", cls.analyze_timeout_seconds)
            ),
            expose_errors=_env_bool("SYNTHESIS_EXPOSE_ERRORS", cls.expose_errors),
        )
