from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Runtime config.

    - Loaded from environment variables (prefix `CANVAS_RELAY_`)
    - Also reads `.env` if present (via pydantic-settings + python-dotenv)
    """

    model_config = SettingsConfigDict(env_file=".env", env_prefix="CANVAS_RELAY_", extra="ignore")

    # Executor pacing: receivers get this long to render before the next command lands.
    command_delay_s: float = 0.1
    phase_settle_s: float = 1.0
    pause_max_ms: int = 10_000

    # Completion / continuation loop
    completion_threshold: int = 95
    max_continuations: int = 25

    # Streaming mode
    streaming_interval_ms: int = 500
    streaming_interval_min_ms: int = 100
    streaming_interval_max_ms: int = 2000
    streaming_batch_size: int = 3
    streaming_pacing_scale: float = 1.2
    streaming_pacing_smoothing: float = 0.5
    max_streaming_failures: int = 3

    # Server bind (used by `canvas-relay`; `uvicorn canvas_relay.server.app:app` ignores these)
    host: str = "127.0.0.1"
    port: int = 8000

    # Transport health. Keepalive is protocol-level websocket ping/pong; the
    # heartbeat sweep only prunes sessions whose socket has already closed.
    ws_ping_interval_s: float = 20.0
    ws_ping_timeout_s: float = 20.0
    heartbeat_interval_s: float = 30.0
    error_recovery_threshold: int = 3
    max_consecutive_errors: int = 5

    # Planner context
    conversation_history_limit: int = 10
    grid_overlay: bool = True
    grid_size: int = 50
    snapshot_max_px: int = 800

    # External model server (OpenAI-compatible gateway).
    # If set, the planner calls `{model_server_url}/v1/chat/completions`.
    model_server_url: str | None = None
    model_server_model: str = "gemini-2.0-flash"
    model_server_api_key: str | None = None
    model_server_timeout_s: float = 30.0
    planner_temperature: float = 0.7
    analysis_temperature: float = 0.2
    planner_max_tokens: int = 8192
    analysis_max_tokens: int = 1024

    # Debugging
    debug_log_msgs: bool = False


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
