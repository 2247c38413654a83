"""Application configuration."""
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_AGENT_INSTRUCTIONS = (
    "You are a helpful, concise assistant. Answer simple questions directly. "
    "For research, analysis or anything that needs up-to-date information, call "
    "getNextResponseFromSupervisor and relay its answer in your own words."
)

DEFAULT_SUPERVISOR_INSTRUCTIONS = (
    "You are a supervisor agent assisting a realtime assistant.\n"
    "Reasoning type: {reasoning_type}\n"
    "Conversation context: {context}\n"
    "Request: {query}\n"
    "Use the available tools when they help, then reply with a single finished "
    "answer that the assistant can relay to the user."
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # OpenAI
    openai_api_key: str
    openai_organization: Optional[str] = None

    # Database
    database_url: str

    # Upstream realtime service
    realtime_url: str = "wss://api.openai.com/v1/realtime"
    realtime_model: str = "gpt-4o-realtime-preview-2024-12-17"
    realtime_voice: str = "ballad"
    agent_instructions: str = DEFAULT_AGENT_INSTRUCTIONS

    # Supervisor escalation
    escalation_tool_name: str = "getNextResponseFromSupervisor"
    supervisor_model: str = "gpt-5-mini"
    supervisor_instructions: str = DEFAULT_SUPERVISOR_INSTRUCTIONS
    supervisor_max_iterations: int = 5
    supervisor_web_search: bool = True

    # Conversation bookkeeping
    history_window_turns: int = 20
    conversation_list_default_limit: int = 3
    finalized_cache_size: int = 256
    history_replay_on_connect: bool = True

    # Timeouts (seconds)
    upstream_connect_timeout_seconds: float = 10.0
    upstream_turn_timeout_seconds: float = 120.0
    supervisor_timeout_seconds: float = 90.0
    tool_timeout_seconds: float = 30.0
    persistence_timeout_seconds: float = 10.0
    sms_reply_timeout_seconds: float = 12.0

    # Diagnostics
    runtime_data_dir: str = "runtime-data"
    breadcrumbs_enabled: bool = True

    # Server
    host: str = "0.0.0.0"
    port: int = 8081
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


settings = Settings()
