"""PumpSync process settings (environment variables, optional .env file)."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Each field can be overridden by the env var of the same name."""

    # --- App ---
    app_name: str = "PumpSync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Upload service ---
    sink_kind: str = "tidepool"  # key in SINK_REGISTRY
    tidepool_api_url: str = "https://api.tidepool.org"
    tidepool_dataset_id: str = ""
    tidepool_session_token: str = ""  # obtained out of band, never logged

    # --- Storage ---
    monitor_dir: Path = Path("monitor")  # pump_history.json, carb_history.json, glucose.json
    service_state_path: Path = Path("monitor/service_state.json")

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def sink_overrides(self) -> dict[str, dict]:
        """Per-service constructor arguments that take precedence over saved state."""
        return {
            "tidepool": {
                "api_url": self.tidepool_api_url,
                "dataset_id": self.tidepool_dataset_id,
                "session_token": self.tidepool_session_token,
            },
        }


@lru_cache
def get_settings() -> Settings:
    return Settings()
