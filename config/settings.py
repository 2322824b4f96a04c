import os
import logging
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

from room_manager import MAX_USER_COUNT

logger = logging.getLogger(__name__)

# Load environment variables
load_dotenv()

DEFAULT_MAX_USER_COUNT = MAX_USER_COUNT
DEFAULT_PORT = 3000

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_origins() -> List[str]:
    """Comma separated ALLOWED_ORIGINS; falls back to allowing any origin"""
    origins = [origin.strip() for origin in os.getenv("ALLOWED_ORIGINS", "").split(",")]
    origins = [origin for origin in origins if origin]
    return origins or ["*"]


@dataclass
class Settings:
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    max_user_count: int = DEFAULT_MAX_USER_COUNT
    allowed_origins: List[str] = field(default_factory=lambda: ["*"])
    relay_candidates: bool = False
    relay_messages: bool = False
    log_level: str = "INFO"


def get_settings() -> Settings:
    """Read settings from the environment (and .env, if present)"""
    return Settings(
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", DEFAULT_PORT)),
        max_user_count=int(os.getenv("MAX_USER_COUNT", DEFAULT_MAX_USER_COUNT)),
        allowed_origins=_env_origins(),
        relay_candidates=_env_flag("RELAY_CANDIDATES"),
        relay_messages=_env_flag("RELAY_MESSAGES"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


def validate_environment(settings: Settings):
    """Validate that the configured values are usable"""
    problems = []
    if settings.max_user_count < 1:
        problems.append(f"MAX_USER_COUNT must be at least 1, got {settings.max_user_count}")
    if not 0 < settings.port < 65536:
        problems.append(f"PORT must be between 1 and 65535, got {settings.port}")
    if logging.getLevelName(settings.log_level) == f"Level {settings.log_level}":
        problems.append(f"LOG_LEVEL '{settings.log_level}' is not a logging level")
    if problems:
        raise RuntimeError(f"Invalid configuration: {'; '.join(problems)}")
    logger.debug(f"Configuration: {settings}")
