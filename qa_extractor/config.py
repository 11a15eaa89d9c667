"""
Configuration - Environment Variables Management

Settings are loaded from the environment (and an optional .env file) using
pydantic-settings. Every timing value is in seconds unless its name says
otherwise.

Usage:
    from qa_extractor.config import get_settings

    settings = get_settings()
    delay = settings.DELAY_BETWEEN_JOBS
"""

from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SelectorSet(BaseModel):
    """CSS selectors handed to the page agent with every extraction."""

    widget_button: str = Field(
        default='[data-action="rufus-open"], #rufus-entry-point, .rufus-launcher, '
        '[aria-label*="Rufus"], [data-testid*="rufus"]'
    )
    question_chip: str = Field(default="li.rufus-carousel-card button")
    chat_container: str = Field(default="#nav-flyout-rufus")
    question_bubble: str = Field(default=".rufus-customer-text")
    answer_bubble: str = Field(default='[id^="section_groupId_text_template_"]')
    loading_indicator: str = Field(default=".a-spinner, .rufus-loading")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Persistence
    DB_PATH: str = Field(default="qa_extractor.db")

    # Backend API
    BACKEND_URL: str = Field(default="http://localhost:3000")
    BACKEND_API_KEY: str = Field(default="")
    SUBMIT_PATH: str = Field(default="/api/rufus-qna")
    QUEUE_PATH: str = Field(default="/api/rufus-qna/queue")
    BACKEND_TIMEOUT: float = Field(default=30.0)

    # Extraction
    MAX_RESULTS: int = Field(default=50)
    DELAY_BETWEEN_CLICKS_MS: int = Field(default=3000)
    SELECTORS: SelectorSet = Field(default_factory=SelectorSet)

    # Scheduling
    DELAY_BETWEEN_JOBS: float = Field(default=5.0)
    REMOTE_POLL_INTERVAL: float = Field(default=15.0)
    PAGE_LOAD_TIMEOUT: float = Field(default=30.0)
    SETTLE_DELAY: float = Field(default=4.0)
    PING_ATTEMPTS: int = Field(default=5)
    PING_INTERVAL: float = Field(default=1.0)
    PING_TIMEOUT: float = Field(default=2.0)
    EXTRACTION_TIMEOUT: float = Field(default=600.0)
    SNAPSHOT_TIMEOUT: float = Field(default=10.0)

    # Item addressing
    KEY_PATTERN: str = Field(default=r"^[A-Z0-9]{10,12}$")
    ITEM_PATH: str = Field(default="/dp/{key}")
    DEFAULT_BASE_URL: str = Field(default="https://www.amazon.com")

    # Browser
    HEADLESS: bool = Field(default=False)
    STORAGE_STATE_PATH: Optional[str] = Field(default=None)
    AGENT_SCRIPT_PATH: Optional[str] = Field(default=None)

    # Command API
    API_HOST: str = Field(default="127.0.0.1")
    API_PORT: int = Field(default=8000)

    # Logging
    LOG_LEVEL: str = Field(default="INFO")

    @property
    def backend_enabled(self) -> bool:
        return bool(self.BACKEND_API_KEY)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Singleton Settings instance
    """
    return Settings()
