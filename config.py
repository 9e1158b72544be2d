"""
Configuration settings for the latest-mail function
Reads configuration from environment / .env file using Pydantic Settings
"""
import sys
from typing import Literal

from loguru import logger
from pydantic import ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings

from errors import ConfigurationError
from models import ImapConfig

# Time kept in reserve under FUNCTION_TIMEOUT to write the response
DEADLINE_MARGIN_SECONDS = 1.0


class Settings(BaseSettings):
    # IMAP Configuration
    imap_user: str = ""
    imap_password: str = ""
    imap_host: str = "imap.gmail.com"
    imap_port: int = 993
    imap_tls: bool = True

    # Retrieval
    email_count: str = "1"
    fetch_strategy: Literal["concurrent", "sequential"] = "concurrent"
    max_message_bytes: int = 10 * 1024 * 1024
    max_body_chars: int = 50_000

    # Timeouts (seconds)
    connect_timeout: float = 8.0
    auth_timeout: float = 4.0
    connection_timeout: float = 10.0
    command_timeout: float = 2.0
    fetch_timeout: float = 4.0
    retrieval_budget: float = 8.0
    close_timeout: float = 1.0
    function_timeout: float = 26.0

    # App Configuration
    app_env: str = "production"
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    model_config = {
        'env_file': '.env',
        'env_file_encoding': 'utf-8',
        'case_sensitive': False,
        'extra': 'ignore'  # Ignore extra fields in .env
    }

    @field_validator("imap_tls", mode="before")
    @classmethod
    def _tls_unless_false(cls, value):
        # Only an explicit "false" turns TLS off
        if isinstance(value, str):
            return value.strip().lower() != "false"
        return value

    @field_validator("email_count", mode="before")
    @classmethod
    def _count_as_text(cls, value):
        return "" if value is None else str(value)

    @model_validator(mode="after")
    def _budgets_fit_deadline(self):
        if self.auth_timeout > self.connect_timeout:
            raise ValueError("AUTH_TIMEOUT must not exceed CONNECT_TIMEOUT")
        if self.fetch_timeout > self.retrieval_budget:
            raise ValueError("FETCH_TIMEOUT must not exceed RETRIEVAL_BUDGET")
        if self.worst_case_seconds >= self.function_timeout - DEADLINE_MARGIN_SECONDS:
            raise ValueError(
                "CONNECTION_TIMEOUT + 2 * COMMAND_TIMEOUT + RETRIEVAL_BUDGET + CLOSE_TIMEOUT "
                f"must be smaller than FUNCTION_TIMEOUT - {DEADLINE_MARGIN_SECONDS:g}"
            )
        return self

    @property
    def worst_case_seconds(self) -> float:
        """Longest an invocation can spend on IMAP: connect, select, search, fetch, close"""
        return (
            self.connection_timeout
            + 2 * self.command_timeout
            + self.retrieval_budget
            + self.close_timeout
        )

    @property
    def is_development(self) -> bool:
        return self.app_env.strip().lower() == "development"

    def imap_config(self) -> ImapConfig:
        """Session configuration handed to the mailbox session"""
        return ImapConfig(
            user=self.imap_user,
            password=self.imap_password,
            host=self.imap_host,
            port=self.imap_port,
            use_tls=self.imap_tls,
            connect_timeout=self.connect_timeout,
            auth_timeout=self.auth_timeout,
            connection_timeout=self.connection_timeout,
            command_timeout=self.command_timeout,
            read_timeout=self.fetch_timeout,
            close_timeout=self.close_timeout,
            max_message_bytes=self.max_message_bytes,
        )


def create_settings(**overrides) -> Settings:
    """Create and validate settings instance"""
    try:
        return Settings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


def setup_logging(level: str = "INFO"):
    """Console logging at the configured level plus a rotating log file"""
    logger.remove()
    logger.add(sys.stderr, level=level.upper())
    logger.add("logs/latest_mail.log", rotation="1 day", retention="7 days", level=level.upper())
