from functools import lru_cache
from typing import Literal, Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "FlowPilot"
    environment: str = Field(default="development")
    debug: bool = Field(default=False)

    # Model provider
    provider: str = Field(default="openrouter")
    model: str = Field(default="minimax/minimax-m2.5")
    openrouter_api_key: Optional[str] = Field(default=None)
    openrouter_base_url: str = Field(default="https://openrouter.ai/api/v1")
    openai_api_key: Optional[str] = Field(default=None)
    request_timeout: float = Field(default=60.0)

    # Execution server
    execution_server_url: str = Field(default="http://localhost:8080/api/v1")
    flow_run_initial_delay: float = Field(default=0.5)
    flow_run_poll_interval: float = Field(default=0.5)
    flow_run_timeout: float = Field(default=30.0)

    # Conversation
    max_validation_retries: int = Field(default=2, ge=0)
    default_source_handle: Literal["then", "else", "loop", "ai_tools"] = Field(default="then")
    dead_end_threshold: int = Field(default=3, ge=0)
    inspect_max_output_chars: int = Field(default=10000, gt=0)

    # Layout
    layout_spacing_primary: float = Field(default=300.0)
    layout_spacing_secondary: float = Field(default=150.0)
    layout_start_x: float = Field(default=0.0)
    layout_start_y: float = Field(default=0.0)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="console")
    session_log_dir: Optional[str] = Field(default=None)
    session_log_flush_interval: float = Field(default=2.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="FLOWPILOT_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
