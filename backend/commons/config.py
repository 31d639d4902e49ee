"""
Commons Runtime Configuration

Loads configuration from environment variables (and a .env file when present),
with documented defaults for models and generation parameters.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


@dataclass
class CommonsConfig:
    """Runtime configuration"""

    # Claude API
    anthropic_api_key: str
    model: str = "claude-sonnet-4-20250514"
    title_model: str = "claude-3-5-haiku-20241022"
    max_tokens: int = 4096

    # Generation defaults (used when neither the call nor the agent sets them)
    default_temperature: float = 0.7
    default_top_p: float = 1.0

    # Title generation
    generate_titles: bool = False
    title_temperature: float = 0.3
    title_max_tokens: int = 20
    title_input_chars: int = 200

    # Database
    database_url: str = "sqlite:///commons_sessions.db"
    db_pool_size: int = 5
    db_max_overflow: int = 10

    # Collaboration
    event_queue_maxsize: int = 1000
    interaction_timeout: float = 120.0  # seconds
    tool_timeout: float = 120.0  # seconds
    tool_endpoint_url: Optional[str] = None

    # Debugging
    enable_event_logging: bool = False
    log_level: str = "INFO"
    log_dir: Optional[str] = None

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "CommonsConfig":
        """Load configuration from environment variables"""
        load_dotenv(env_file)

        api_key = os.getenv("ANTHROPIC_API_KEY") or os.getenv("COMMONS_ANTHROPIC_API_KEY")
        if not api_key:
            raise ValueError(
                "ANTHROPIC_API_KEY or COMMONS_ANTHROPIC_API_KEY environment variable is required"
            )

        return cls(
            anthropic_api_key=api_key,
            model=os.getenv("COMMONS_MODEL", cls.model),
            title_model=os.getenv("COMMONS_TITLE_MODEL", cls.title_model),
            max_tokens=int(os.getenv("COMMONS_MAX_TOKENS", "4096")),
            default_temperature=float(os.getenv("COMMONS_TEMPERATURE", "0.7")),
            default_top_p=float(os.getenv("COMMONS_TOP_P", "1.0")),
            generate_titles=os.getenv("COMMONS_GENERATE_TITLES", "false").lower() == "true",
            title_temperature=float(os.getenv("COMMONS_TITLE_TEMPERATURE", "0.3")),
            title_max_tokens=int(os.getenv("COMMONS_TITLE_MAX_TOKENS", "20")),
            title_input_chars=int(os.getenv("COMMONS_TITLE_INPUT_CHARS", "200")),
            database_url=os.getenv("COMMONS_DATABASE_URL", cls.database_url),
            db_pool_size=int(os.getenv("COMMONS_DB_POOL_SIZE", "5")),
            db_max_overflow=int(os.getenv("COMMONS_DB_MAX_OVERFLOW", "10")),
            event_queue_maxsize=int(os.getenv("COMMONS_EVENT_QUEUE_MAXSIZE", "1000")),
            interaction_timeout=float(os.getenv("COMMONS_INTERACTION_TIMEOUT", "120")),
            tool_timeout=float(os.getenv("COMMONS_TOOL_TIMEOUT", "120")),
            tool_endpoint_url=os.getenv("COMMONS_TOOL_ENDPOINT_URL") or None,
            enable_event_logging=os.getenv("COMMONS_ENABLE_EVENT_LOGGING", "false").lower() == "true",
            log_level=os.getenv("COMMONS_LOG_LEVEL", "INFO"),
            log_dir=os.getenv("COMMONS_LOG_DIR") or None,
        )

    def validate(self) -> None:
        """Validate configuration on startup (fail fast if invalid)"""
        if not self.anthropic_api_key:
            raise ValueError("anthropic_api_key is required")

        if self.max_tokens < 1 or self.max_tokens > 100000:
            raise ValueError("max_tokens must be between 1 and 100000")

        if self.default_temperature < 0 or self.default_temperature > 2:
            raise ValueError("default_temperature must be between 0 and 2")

        if self.default_top_p <= 0 or self.default_top_p > 1:
            raise ValueError("default_top_p must be in (0, 1]")

        if self.event_queue_maxsize < 1:
            raise ValueError("event_queue_maxsize must be at least 1")

        if self.interaction_timeout <= 0:
            raise ValueError("interaction_timeout must be positive")

        if self.tool_timeout <= 0:
            raise ValueError("tool_timeout must be positive")
