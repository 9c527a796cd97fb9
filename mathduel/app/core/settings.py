import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/engine.yaml"


class EngineSettings(BaseModel):
    """Tunable constants of the tournament engine (config/engine.yaml -> `engine:`)."""

    # Game timing
    countdown_seconds: int = 5
    wrong_answer_lock_seconds: int = 5
    max_mistakes: int = 3
    afk_warning_seconds: int = 15
    afk_resign_seconds: int = 5

    # Tournament points
    win_points: float = 2.0
    berserk_bonus: float = 1.0
    fire_streak_threshold: int = 3
    on_fire_doubles_points: bool = False

    # Pairing
    swiss_lookahead: int = 4
    swiss_search_budget: int = 5000
    problem_rating_window: int = 200
    default_rating: float = 1000.0

    # Lobby pause abuse prevention
    pause_cooldown_seconds: int = 10
    max_pause_cooldown_seconds: int = 120

    # Scheduler
    tick_interval_seconds: float = 2.0

    # Rating deltas
    default_difficulty: float = 5.0
    loss_rating_factor: float = Field(default=0.7, gt=0, le=1)


def load_engine_settings(config_path: Optional[str] = None) -> EngineSettings:
    path = Path(config_path or os.getenv("ENGINE_CONFIG_PATH", DEFAULT_CONFIG_PATH))
    if not path.exists():
        logger.warning("Engine config %s not found, using defaults", path)
        return EngineSettings()

    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    return EngineSettings(**data.get("engine", {}))


# Singleton instance
settings = load_engine_settings()
