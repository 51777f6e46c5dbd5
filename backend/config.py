"""
Configuration for the item finder backend.

Defaults live on the dataclasses; from_env() overrides them from FINDER_*
environment variables (a .env file is loaded first).
"""

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from dotenv import load_dotenv

load_dotenv()


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


@dataclass
class EmbeddingConfig:
    """Model input contract (MobileNetV2-style feature extractor by default)."""
    model_path: Optional[str] = None
    input_size: int = 224
    mean: Tuple[float, float, float] = (0.485, 0.456, 0.406)
    std: Tuple[float, float, float] = (0.229, 0.224, 0.225)
    # Backends tried in order, fastest first
    backends: Tuple[str, ...] = ("cuda", "mps", "cpu")
    timing_history: int = 30


@dataclass
class FinderConfig:
    """Tunable parameters for teach/search sessions."""
    # Search loop
    target_fps: float = 8.0
    low_power_fps: float = 4.0  # Used when the client reports battery saver
    session_timeout_seconds: float = 60.0  # Bounds battery/thermal impact

    # Teaching
    max_learned_items: int = 1  # Free tier quota; re-teaching a name is exempt
    min_teaching_photos: int = 1

    # Guidance
    voice_probability: float = 0.2
    found_confidence: float = 0.85

    # Region proposals
    grid_size: int = 3
    yolo_model: Optional[str] = None  # e.g. "yolo11s.pt"; grid-only when unset

    # Log a warning after this many consecutive failed ticks
    failure_warning_threshold: int = 10

    db_path: str = "./finder_data/items.db"

    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)

    @property
    def tick_interval(self) -> float:
        return 1.0 / self.target_fps

    @classmethod
    def from_env(cls) -> "FinderConfig":
        """Build a config from FINDER_* environment variables."""
        defaults = cls()
        return cls(
            target_fps=_env_float("FINDER_TARGET_FPS", defaults.target_fps),
            low_power_fps=_env_float("FINDER_LOW_POWER_FPS", defaults.low_power_fps),
            session_timeout_seconds=_env_float("FINDER_SESSION_TIMEOUT", defaults.session_timeout_seconds),
            max_learned_items=_env_int("FINDER_MAX_ITEMS", defaults.max_learned_items),
            min_teaching_photos=_env_int("FINDER_MIN_PHOTOS", defaults.min_teaching_photos),
            voice_probability=_env_float("FINDER_VOICE_PROBABILITY", defaults.voice_probability),
            grid_size=_env_int("FINDER_GRID_SIZE", defaults.grid_size),
            yolo_model=os.getenv("FINDER_YOLO_MODEL") or None,
            db_path=os.getenv("FINDER_DB_PATH", defaults.db_path),
            embedding=EmbeddingConfig(model_path=os.getenv("FINDER_MODEL_PATH") or None),
        )


@dataclass
class CloudConfig:
    """Settings for the Gemini-backed cloud vision fallback."""
    project: Optional[str] = None
    location: str = "us-central1"
    model: str = "gemini-2.5-flash"
    temperature: float = 0.3
    max_output_tokens: int = 150
    cache_ttl: int = 30
    cache_maxsize: int = 100

    @classmethod
    def from_env(cls) -> "CloudConfig":
        return cls(
            project=os.getenv("GOOGLE_CLOUD_PROJECT"),
            location=os.getenv("GOOGLE_CLOUD_LOCATION", "us-central1"),
            model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
        )
