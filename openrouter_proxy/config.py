"""Configuration management for the OpenRouter proxy."""

import os
from dataclasses import dataclass, field
from typing import List
from dotenv import load_dotenv


@dataclass
class Config:
    """Application configuration loaded from environment variables."""

    api_keys: List[str] = field(default_factory=list)
    port: int = 3000
    host: str = "0.0.0.0"
    max_attempts: int = 3
    rate_limit_cooldown_seconds: int = 60
    failure_threshold: int = 5
    openrouter_base_url: str = "https://openrouter.ai/api"
    http_referer: str = "http://localhost:3000"
    site_name: str = "OpenRouterProxy"
    keys_file: str = ""
    log_level: str = "INFO"

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("MAX_ATTEMPTS must be at least 1")
        if self.rate_limit_cooldown_seconds <= 0:
            raise ValueError("RATE_LIMIT_COOLDOWN_SECONDS must be positive")
        if self.failure_threshold < 1:
            raise ValueError("FAILURE_THRESHOLD must be at least 1")


def load_config(use_dotenv: bool = True) -> Config:
    """Load configuration from environment variables.

    Args:
        use_dotenv: read a ``.env`` file into the environment first

    Returns:
        Config: Configured application settings

    Raises:
        ValueError: If environment variables are invalid
    """
    if use_dotenv:
        load_dotenv()

    api_keys_raw = os.getenv("OPENROUTER_API_KEYS", "")
    api_keys = [key.strip() for key in api_keys_raw.split(",") if key.strip()]

    return Config(
        api_keys=api_keys,
        port=int(os.getenv("PORT", "3000")),
        host=os.getenv("HOST", "0.0.0.0"),
        max_attempts=int(os.getenv("MAX_ATTEMPTS", "3")),
        rate_limit_cooldown_seconds=int(
            os.getenv("RATE_LIMIT_COOLDOWN_SECONDS", "60")
        ),
        failure_threshold=int(os.getenv("FAILURE_THRESHOLD", "5")),
        openrouter_base_url=os.getenv(
            "OPENROUTER_BASE_URL", "https://openrouter.ai/api"
        ),
        http_referer=os.getenv("HTTP_REFERER", "http://localhost:3000"),
        site_name=os.getenv("SITE_NAME", "OpenRouterProxy"),
        keys_file=os.getenv("KEYS_FILE", ""),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
