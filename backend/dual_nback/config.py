"""Runtime settings, read from the environment (``.env`` is loaded by main)."""

import os
from dataclasses import dataclass, field
from typing import List, Optional


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_origins() -> List[str]:
    raw = os.environ.get("ALLOWED_ORIGINS", "http://localhost:5173")
    return [o.strip() for o in raw.split(",") if o.strip()]


@dataclass(frozen=True)
class Settings:
    default_mode: str = "dual"
    default_n_level: int = 2
    block_size: int = 20
    isi_seconds: float = 2.5
    match_probability: float = 0.3
    promotion_threshold: float = 0.8
    demotion_threshold: float = 0.5
    evaluation_window: int = 20
    min_n_level: int = 1
    max_n_level: int = 10
    retention_seconds: float = 24 * 60 * 60
    sweep_interval_seconds: float = 60 * 60
    # Accepts isi=0 so a whole block can be driven without waiting.
    test_mode: bool = False
    database_url: Optional[str] = None
    allowed_origins: List[str] = field(default_factory=lambda: ["http://localhost:5173"])

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            default_mode=os.environ.get("NBACK_DEFAULT_MODE", "dual"),
            default_n_level=int(os.environ.get("NBACK_DEFAULT_N_LEVEL", "2")),
            block_size=int(os.environ.get("NBACK_BLOCK_SIZE", "20")),
            isi_seconds=float(os.environ.get("NBACK_ISI_SECONDS", "2.5")),
            match_probability=float(os.environ.get("NBACK_MATCH_PROBABILITY", "0.3")),
            promotion_threshold=float(os.environ.get("NBACK_PROMOTION_THRESHOLD", "0.8")),
            demotion_threshold=float(os.environ.get("NBACK_DEMOTION_THRESHOLD", "0.5")),
            evaluation_window=int(os.environ.get("NBACK_EVALUATION_WINDOW", "20")),
            retention_seconds=float(os.environ.get("NBACK_RETENTION_SECONDS", str(24 * 60 * 60))),
            sweep_interval_seconds=float(os.environ.get("NBACK_SWEEP_INTERVAL_SECONDS", str(60 * 60))),
            test_mode=_env_bool("NBACK_TEST_MODE", False),
            database_url=os.environ.get("DATABASE_URL") or None,
            allowed_origins=_env_origins(),
        )
