from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    PROJECT_NAME: str = "FlowGuardian Leak Analyzer"

    GEMINI_API_KEY: Optional[str] = None
    GEMINI_API_URL: str = (
        "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.5-pro:generateContent"
    )
    GEMINI_TIMEOUT: float = 90.0  # Pro model is slow
    GEMINI_MAX_RETRIES: int = 0
    GEMINI_RETRY_DELAY: float = 1.0

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
