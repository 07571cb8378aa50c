from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    ML_CONFIG_PATH: Optional[str] = None
    DATA_DIR: str = "ai_data"
    ML_WARM_UP_ON_STARTUP: bool = True
    ML_ADMIN_TOKEN: Optional[str] = None
    # seconds between shadow evaluation and trigger checks; 0 disables
    ML_SCHEDULER_INTERVAL_SECONDS: float = 3600.0

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
