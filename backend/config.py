"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the batch
execution engine and the task orchestrator. All settings can be overridden via
environment variables or a .env file.
"""

import json
import logging
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(RuntimeError):
    """Raised when the application is wired in a way that cannot work."""


def _parse_str_list(v: Any, default: list[str]) -> list[str]:
    """Parse a list setting from a JSON array, a comma-separated string, or a list."""
    if isinstance(v, list):
        return [str(item) for item in v]
    if isinstance(v, (int, float)):
        return [str(v)]
    if isinstance(v, str):
        v = v.strip()
        if not v:
            return []
        if v.startswith("["):
            try:
                return [str(item) for item in json.loads(v)]
            except json.JSONDecodeError:
                pass
        return [item.strip() for item in v.split(",") if item.strip()]
    return default


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        default_model: Model used for the simple chat path and LLM workers.
        planner_model: Model used to build execution plans.
        aggregator_model: Model used to synthesize step outputs.
        llm_fallback_model: Fallback model if the primary fails after retries.
        llm_max_retries: Retries on transient provider errors.
        llm_request_timeout_seconds: Timeout for a single provider call.
        use_mock_llm: If True, the app runs against a canned mock client.
        batch_window_ms: Coalescing window for follow-up messages.
        batch_max_window_ms: Oldest a pending batch may get before it is flushed.
        batch_max_messages: Message count that forces a flush.
        batch_immediate_delay_seconds: Delay used for first-message, orphan and
            stuck-recovery scheduling.
        retry_max_retries: Retry ceiling for a failing batch.
        retry_initial_delay_ms: First retry delay.
        retry_max_delay_ms: Upper bound on any retry delay.
        retry_backoff_multiplier: Exponential growth factor between retries.
        heartbeat_max_age_ms: Heartbeat age after which a processing batch is stuck.
        heartbeat_interval_ms: How often an in-flight batch refreshes its heartbeat.
        thinking_rotation_interval_ms: Minimum gap between "thinking" placeholder edits.
        chat_system_prompt: System prompt for the simple chat path.
        chat_max_history: Conversation messages kept per actor.
        chat_max_tool_iterations: Upper bound on tool-call turns per reply.
        orchestration_enabled: Route complex requests to the plan pipeline.
        orchestration_min_chars: Minimum request length considered complex.
        planner_max_steps: Steps kept from a generated plan.
        executor_max_parallel: Steps dispatched concurrently within one level.
        executor_continue_on_error: Keep running later levels after a failure.
        worker_step_timeout_seconds: Per-step timeout enforced by the dispatcher.
        admin_user_ids: Users who receive debug details on terminal failures.
        database_path: SQLite file backing actor state, timers and observability.
        timer_poll_interval_seconds: Poll interval of the durable timer worker.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # LLM Configuration
    # Model names must include provider prefix for LiteLLM (e.g., gemini/, xai/, openai/)
    default_model: str = "openai/gpt-4o-mini"
    planner_model: str = "openai/gpt-4o-mini"
    aggregator_model: str = "openai/gpt-4o-mini"
    llm_fallback_model: str | None = None
    llm_max_retries: int = 3
    llm_request_timeout_seconds: int = 120
    use_mock_llm: bool = False

    # Batch coalescing
    batch_window_ms: int = 500
    batch_max_window_ms: int = 5000
    batch_max_messages: int = 10
    batch_immediate_delay_seconds: float = 1.0

    # Retry / backoff
    retry_max_retries: int = 6
    retry_initial_delay_ms: int = 2000
    retry_max_delay_ms: int = 64000
    retry_backoff_multiplier: float = 2.0

    # Heartbeat
    heartbeat_max_age_ms: int = 30000
    heartbeat_interval_ms: int = 5000
    thinking_rotation_interval_ms: int = 5000

    # Chat path
    chat_system_prompt: str = (
        "You are a helpful assistant. Answer concisely and accurately."
    )
    chat_max_history: int = 20
    chat_max_tool_iterations: int = 5

    # Orchestration
    orchestration_enabled: bool = True
    orchestration_min_chars: int = 200
    planner_max_steps: int = 10
    executor_max_parallel: int = 5
    executor_continue_on_error: bool = False
    worker_step_timeout_seconds: int = 60

    # Administration
    admin_user_ids: str | list[str] = []

    # Persistence
    database_path: str = "./data/actors.db"
    timer_poll_interval_seconds: float = 0.5

    # Server Configuration
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from a JSON array, a comma-separated string, or a list."""
        return _parse_str_list(v, ["http://localhost:3000"])

    @field_validator("admin_user_ids", mode="before")
    @classmethod
    def parse_admin_user_ids(cls, v: Any) -> list[str]:
        """Parse admin user ids the same way as CORS origins."""
        return _parse_str_list(v, [])

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

# Create a logger for this module
logger = structlog.get_logger(__name__)
