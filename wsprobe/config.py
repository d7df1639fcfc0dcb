"""
Core configuration management
"""
from pathlib import Path
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """wsprobe settings"""

    # Paths
    project_root: Path = Path(__file__).parent.parent
    log_dir: Path = project_root / "logs"

    # Codec guards
    max_input_length: int = 1_000_000  # samples above this are skipped by detection
    max_extract_depth: int = 10
    detection_sample_size: int = 5

    # Connection
    connect_timeout_sec: float = 10.0
    state_chain_delay_ms: int = 200
    reconnect_settle_ms: int = 500
    default_ping_interval_ms: int = 25000
    max_message_bytes: int = 16 * 1024 * 1024
    close_code: int = 1000
    close_reason: str = "Normal closure"

    # Capture history
    history_limit: int = 10000
    response_window_ms: int = 1000

    class Config:
        env_prefix = "WSPROBE_"
        env_file = ".env"


settings = Settings()
