"""Runtime configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "explorAble"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Supabase ---
    supabase_db_url: str  # direct postgres connection string for asyncpg
    db_pool_min_size: int = 1
    db_pool_max_size: int = 5
    db_command_timeout: float = 30.0

    # --- Local storage ---
    local_store_dir: str = ".explorable"

    # --- Push delivery (Expo) ---
    expo_push_url: str = "https://exp.host/--/api/v2/push/send"
    expo_access_token: str = ""  # optional; required only with enhanced push security
    push_timeout_seconds: float = 10.0

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "EXPLORABLE_",
    }


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
