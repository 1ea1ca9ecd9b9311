from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "StreamChat"
    debug: bool = False

    # Paths
    db_path: Path = Path(__file__).resolve().parent.parent.parent / "streamchat.db"

    # LLM
    llm_provider: str = "openai"  # openai | gemini
    model_id: str = ""  # empty = provider default
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    gemini_api_key: str = ""
    temperature: float = 0.7
    max_tokens: int = 2000
    model_request_timeout: float = 60.0
    model_max_retries: int = 2

    # Context
    system_prompt: str = ""  # overrides the per-type persona when set
    default_conversation_type: str = "GENERAL"
    context_window_size: int = 15
    title_max_length: int = 40
    max_message_length: int = 2000  # chat input
    max_stored_message_length: int = 4000  # messages added or edited through the history API

    # Streaming
    transport_buffer_size: int = 32
    fragment_write_timeout: float = 10.0
    turn_timeout: float = 300.0

    # Rate limiting
    rate_limit_enabled: bool = True
    rate_limit_backend: str = "memory"  # memory | database
    rate_limit_max_requests: int = 30
    rate_limit_window_seconds: int = 15 * 60

    # Server
    cors_origins: list[str] = ["*"]

    model_config = {
        "env_file": str(Path(__file__).resolve().parent.parent.parent / ".env"),
        "env_prefix": "STREAMCHAT_",
        "extra": "ignore",
    }


settings = Settings()
