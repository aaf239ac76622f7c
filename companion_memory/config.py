from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


load_dotenv()


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"\ufeff{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


@dataclass(slots=True)
class Settings:
    sqlite_path: Path
    memory_backend: str
    postgres_dsn: str

    window_size: int
    active_thread_limit: int
    topic_score_decay: float
    topic_score_cap: float
    volatility_alpha: float
    max_update_retries: int

    memory_block_max_chars: int
    persona_snapshot_max_lines: int
    persona_fact_limit: int
    preference_fact_limit: int
    default_response_language: str

    log_level: str

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            sqlite_path=Path(_env_str("SQLITE_PATH", "./data/companion_memory.db")).expanduser(),
            memory_backend=_env_str("MEMORY_BACKEND", "sqlite").lower(),
            postgres_dsn=_env_str("MEMORY_POSTGRES_DSN", ""),
            window_size=_env_int("SHORT_TERM_WINDOW_SIZE", 20, aliases=("ROLLING_WINDOW_SIZE",)),
            active_thread_limit=_env_int("ACTIVE_THREAD_LIMIT", 5),
            topic_score_decay=_env_float("TOPIC_SCORE_DECAY", 0.9),
            topic_score_cap=_env_float("TOPIC_SCORE_CAP", 10.0),
            volatility_alpha=_env_float("VOLATILITY_ALPHA", 0.1),
            max_update_retries=_env_int("KERNEL_MAX_UPDATE_RETRIES", 3),
            memory_block_max_chars=_env_int("MEMORY_BLOCK_MAX_CHARS", 2200),
            persona_snapshot_max_lines=_env_int("PERSONA_SNAPSHOT_MAX_LINES", 6),
            persona_fact_limit=_env_int("PERSONA_FACT_LIMIT", 96),
            preference_fact_limit=_env_int("PREFERENCE_FACT_LIMIT", 64),
            default_response_language=_env_str("DEFAULT_RESPONSE_LANGUAGE", "en").lower(),
            log_level=_env_str("LOG_LEVEL", "INFO").upper(),
        )

    def validate(self) -> None:
        if self.memory_backend not in {"sqlite", "postgres"}:
            raise ValueError("MEMORY_BACKEND must be 'sqlite' or 'postgres'")
        if self.memory_backend == "postgres" and not self.postgres_dsn:
            raise ValueError("MEMORY_POSTGRES_DSN is required when MEMORY_BACKEND=postgres")

        if self.window_size < 2:
            raise ValueError("SHORT_TERM_WINDOW_SIZE must be >= 2")
        if self.window_size > 500:
            raise ValueError("SHORT_TERM_WINDOW_SIZE must be <= 500")
        if self.active_thread_limit < 1:
            raise ValueError("ACTIVE_THREAD_LIMIT must be >= 1")
        if self.topic_score_decay <= 0.0 or self.topic_score_decay > 1.0:
            raise ValueError("TOPIC_SCORE_DECAY must be in (0, 1]")
        if self.topic_score_cap <= 0.0:
            raise ValueError("TOPIC_SCORE_CAP must be > 0")
        if self.volatility_alpha <= 0.0 or self.volatility_alpha > 1.0:
            raise ValueError("VOLATILITY_ALPHA must be in (0, 1]")
        if self.max_update_retries < 1:
            raise ValueError("KERNEL_MAX_UPDATE_RETRIES must be >= 1")

        if self.memory_block_max_chars < 600:
            raise ValueError("MEMORY_BLOCK_MAX_CHARS must be >= 600")
        if self.persona_snapshot_max_lines < 1:
            raise ValueError("PERSONA_SNAPSHOT_MAX_LINES must be >= 1")
        if self.persona_fact_limit < 1:
            raise ValueError("PERSONA_FACT_LIMIT must be >= 1")
        if self.preference_fact_limit < 1:
            raise ValueError("PREFERENCE_FACT_LIMIT must be >= 1")
        if self.default_response_language not in {"en", "ar", "mixed"}:
            raise ValueError("DEFAULT_RESPONSE_LANGUAGE must be one of: en, ar, mixed")
