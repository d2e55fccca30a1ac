"""
Configuration management for the realtime call bridge.

Loads environment variables and provides a strongly-typed configuration object.
The object is built once at startup and passed explicitly to each call session.
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import List

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

DEFAULT_INSTRUCTIONS = (
    "You are a concise, friendly receptionist. Capture the caller's name and callback number early. "
    "Keep answers under 15 seconds. If unsure or a human is requested, say you will transfer."
)
DEFAULT_GREETING = "Hi! Thanks for calling. How can I help today?"


class ConfigError(Exception):
    """Raised when configuration is invalid."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    port: int = 3000
    log_level: str = "INFO"

    # OpenAI Realtime
    openai_api_key: str = ""
    openai_realtime_model: str = "gpt-4o-realtime-preview"
    openai_realtime_url: str = "wss://api.openai.com/v1/realtime"
    openai_realtime_voice: str = "verse"
    openai_realtime_instructions: str = DEFAULT_INSTRUCTIONS
    openai_realtime_greeting: str = DEFAULT_GREETING
    openai_realtime_turn_silence_ms: int = 400
    openai_realtime_sample_rate: int = 24000
    openai_realtime_open_timeout: float = 10.0

    # Bridge behavior
    forward_caller_audio: bool = True
    pre_start_buffer_ms: int = 2000

    def validate(self) -> List[str]:
        """
        Validate the configuration.

        Returns:
            Warnings for degraded-but-runnable settings

        Raises:
            ConfigError: If the bridge cannot run with these values
        """
        errors = []
        if not 0 < self.port < 65536:
            errors.append(f"PORT must be between 1 and 65535, got {self.port}")
        if not self.openai_realtime_model:
            errors.append("OPENAI_REALTIME_MODEL must not be empty")
        if self.openai_realtime_sample_rate <= 0 or self.openai_realtime_sample_rate % 8000:
            errors.append(
                "OPENAI_REALTIME_SAMPLE_RATE must be a positive multiple of 8000, "
                f"got {self.openai_realtime_sample_rate}"
            )
        if self.openai_realtime_turn_silence_ms < 0:
            errors.append("OPENAI_REALTIME_TURN_SILENCE_MS must not be negative")
        if self.pre_start_buffer_ms < 0:
            errors.append("PRE_START_BUFFER_MS must not be negative")

        if errors:
            raise ConfigError("Invalid configuration: " + "; ".join(errors))

        warnings = []
        if not self.openai_api_key:
            warnings.append("OPENAI_API_KEY is not set; upstream connections will be rejected")
        return warnings

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            port=self.port,
            log_level=self.log_level,
            openai_realtime_model=self.openai_realtime_model,
            openai_realtime_url=self.openai_realtime_url,
            openai_realtime_voice=self.openai_realtime_voice,
            turn_silence_ms=self.openai_realtime_turn_silence_ms,
            upstream_sample_rate=self.openai_realtime_sample_rate,
            forward_caller_audio=self.forward_caller_audio,
            pre_start_buffer_ms=self.pre_start_buffer_ms,
            openai_key_set=bool(self.openai_api_key),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        # Server
        port=_get_int("PORT", 3000),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # OpenAI Realtime
        openai_api_key=os.getenv("OPENAI_API_KEY", "").strip(),
        openai_realtime_model=os.getenv("OPENAI_REALTIME_MODEL", "gpt-4o-realtime-preview").strip(),
        openai_realtime_url=os.getenv("OPENAI_REALTIME_URL", "wss://api.openai.com/v1/realtime").strip(),
        openai_realtime_voice=os.getenv("OPENAI_REALTIME_VOICE", "verse"),
        openai_realtime_instructions=os.getenv("OPENAI_REALTIME_INSTRUCTIONS", "") or DEFAULT_INSTRUCTIONS,
        openai_realtime_greeting=os.getenv("OPENAI_REALTIME_GREETING", "") or DEFAULT_GREETING,
        openai_realtime_turn_silence_ms=_get_int("OPENAI_REALTIME_TURN_SILENCE_MS", 400),
        openai_realtime_sample_rate=_get_int("OPENAI_REALTIME_SAMPLE_RATE", 24000),
        openai_realtime_open_timeout=_get_float("OPENAI_REALTIME_OPEN_TIMEOUT", 10.0),

        # Bridge behavior
        forward_caller_audio=_get_bool("FORWARD_CALLER_AUDIO", True),
        pre_start_buffer_ms=_get_int("PRE_START_BUFFER_MS", 2000),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    A missing API key only produces a warning.
    """
    config = get_config()
    for warning in config.validate():
        logger.warning("Degraded configuration", warning=warning)
    config.log_config()
    return config
