# aios/config.py
"""
AIOS Configuration Module - Environment-based configuration for the orchestrator core
Supports dev, testing and production configurations
"""

import logging.config
import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

# Load .env file if present
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Settings:
    """Application settings loaded from environment variables"""

    # ==========================================================================
    # Application Settings
    # ==========================================================================
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    DEBUG: bool = _env_bool("DEBUG", "true")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_DIR: str = os.getenv("LOG_DIR", "logs")

    # ==========================================================================
    # Admin API Settings
    # ==========================================================================
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", "8000"))

    # ==========================================================================
    # Database Configuration
    # ==========================================================================
    @property
    def DATABASE_URL(self) -> str:
        """Get database URL with fallback for development"""
        url = os.getenv("DATABASE_URL")
        if url:
            return url
        # Default to SQLite for development
        return "sqlite:///./aios.db"

    DB_POOL_SIZE: int = int(os.getenv("DB_POOL_SIZE", "5"))
    DB_MAX_OVERFLOW: int = int(os.getenv("DB_MAX_OVERFLOW", "10"))

    # ==========================================================================
    # Redis Configuration (event forwarding)
    # ==========================================================================
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))
    REDIS_PASSWORD: Optional[str] = os.getenv("REDIS_PASSWORD") or None

    EVENTS_REDIS_ENABLED: bool = _env_bool("EVENTS_REDIS_ENABLED", "false")
    EVENTS_REDIS_CHANNEL: str = os.getenv("EVENTS_REDIS_CHANNEL", "aios:events")

    @property
    def REDIS_URL(self) -> str:
        """Construct Redis URL from components"""
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # ==========================================================================
    # Orchestration Settings
    # ==========================================================================
    EVENT_HISTORY_SIZE: int = int(os.getenv("EVENT_HISTORY_SIZE", "1000"))
    QUEUE_MAX_ATTEMPTS: int = int(os.getenv("QUEUE_MAX_ATTEMPTS", "3"))
    AUTO_PROCESS_ENABLED: bool = _env_bool("AUTO_PROCESS_ENABLED", "true")
    AUTO_PROCESS_INTERVAL: int = int(os.getenv("AUTO_PROCESS_INTERVAL", "30"))
    ORCHESTRATION_CONCURRENCY: int = int(os.getenv("ORCHESTRATION_CONCURRENCY", "2"))
    ORCHESTRATION_RETRY_ATTEMPTS: int = int(os.getenv("ORCHESTRATION_RETRY_ATTEMPTS", "3"))
    ORCHESTRATION_EXECUTION_TIMEOUT: int = int(os.getenv("ORCHESTRATION_EXECUTION_TIMEOUT", "300"))
    PHASE_REVIEW_FAIL_OPEN: bool = _env_bool("PHASE_REVIEW_FAIL_OPEN", "true")

    # ==========================================================================
    # AI Completion Settings
    # ==========================================================================
    ANTHROPIC_API_KEY: Optional[str] = os.getenv("ANTHROPIC_API_KEY") or None
    ANTHROPIC_API_URL: str = os.getenv("ANTHROPIC_API_URL", "https://api.anthropic.com/v1/messages")
    COMPLETION_MODEL: str = os.getenv("COMPLETION_MODEL", "claude-sonnet-4-20250514")
    COMPLETION_MAX_TOKENS: int = int(os.getenv("COMPLETION_MAX_TOKENS", "1024"))
    COMPLETION_TIMEOUT: int = int(os.getenv("COMPLETION_TIMEOUT", "120"))

    def get_log_config(self) -> dict:
        """Get structured logging configuration"""
        return {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "correlation": {
                    "()": "aios.middleware.correlation.CorrelationIdFilter"
                }
            },
            "formatters": {
                "default": {
                    "format": "%(asctime)s [%(levelname)s] [corr-id:%(correlation_id)s] %(name)s: %(message)s",
                    "datefmt": "%Y-%m-%dT%H:%M:%S"
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "filters": ["correlation"],
                    "stream": "ext://sys.stdout"
                },
                "file": {
                    "class": "logging.handlers.RotatingFileHandler",
                    "formatter": "default",
                    "filters": ["correlation"],
                    "filename": os.path.join(self.LOG_DIR, "aios.log"),
                    "maxBytes": 50 * 1024 * 1024,
                    "backupCount": 5
                }
            },
            "root": {
                "level": self.LOG_LEVEL,
                "handlers": ["console", "file"]
            }
        }


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Apply the logging configuration, creating the log directory first"""
    settings = settings or get_settings()
    os.makedirs(settings.LOG_DIR, exist_ok=True)
    logging.config.dictConfig(settings.get_log_config())


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
