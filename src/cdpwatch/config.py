"""Configuration system for cdpwatch."""

import logging
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from cdpwatch.browser.profile import DEFAULT_CDP_URL, BrowserProfile

logger = logging.getLogger(__name__)


class EnvConfig(BaseSettings):
    """Environment variable configuration using pydantic-settings."""

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=True,
        env_ignore_empty=True,
        extra='allow'
    )

    # Logging
    CDPWATCH_LOGGING_LEVEL: str = Field(default='info')
    CDP_LOGGING_LEVEL: str = Field(default='WARNING')

    # Connection
    CDPWATCH_CDP_URL: str = Field(default=DEFAULT_CDP_URL)
    CDPWATCH_CONNECT_TIMEOUT: float = Field(default=10.0)
    CDPWATCH_EVENT_BUS_CAPACITY: int = Field(default=1024)

    # Downloads
    CDPWATCH_DOWNLOADS_PATH: str | None = Field(default=None)
    CDPWATCH_MAX_COMPLETED_DOWNLOADS: int = Field(default=100)

    # Security
    CDPWATCH_ALLOWED_DOMAINS: str | None = Field(default=None)
    CDPWATCH_PROHIBITED_DOMAINS: str | None = Field(default=None)
    CDPWATCH_BLOCK_IP_ADDRESSES: bool = Field(default=False)

    # Crash detection
    CDPWATCH_NETWORK_TIMEOUT: float = Field(default=10.0)
    CDPWATCH_CHECK_INTERVAL: float = Field(default=5.0)


class Config:
    """Configuration class backed by the environment.

    Re-reads the environment through EnvConfig on every access.
    """

    _instance: 'Config | None' = None

    def __new__(cls) -> 'Config':
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    @property
    def LOGGING_LEVEL(self) -> str:
        return EnvConfig().CDPWATCH_LOGGING_LEVEL.lower()

    @property
    def CDP_LOGGING_LEVEL(self) -> str:
        return EnvConfig().CDP_LOGGING_LEVEL.upper()

    def load_config(self) -> dict[str, Any]:
        """Collect BrowserProfile settings from the environment.

        Only variables that are actually set end up in the result, so
        BrowserProfile defaults apply to everything else.
        """
        env_config = EnvConfig()
        profile: dict[str, Any] = {
            'cdp_url': env_config.CDPWATCH_CDP_URL,
            'connect_timeout': env_config.CDPWATCH_CONNECT_TIMEOUT,
            'event_bus_capacity': env_config.CDPWATCH_EVENT_BUS_CAPACITY,
            'max_completed_downloads': env_config.CDPWATCH_MAX_COMPLETED_DOWNLOADS,
            'block_ip_addresses': env_config.CDPWATCH_BLOCK_IP_ADDRESSES,
            'network_timeout': env_config.CDPWATCH_NETWORK_TIMEOUT,
            'check_interval': env_config.CDPWATCH_CHECK_INTERVAL,
        }

        if env_config.CDPWATCH_DOWNLOADS_PATH:
            profile['downloads_path'] = env_config.CDPWATCH_DOWNLOADS_PATH
        if env_config.CDPWATCH_ALLOWED_DOMAINS:
            profile['allowed_domains'] = env_config.CDPWATCH_ALLOWED_DOMAINS
        if env_config.CDPWATCH_PROHIBITED_DOMAINS:
            profile['prohibited_domains'] = env_config.CDPWATCH_PROHIBITED_DOMAINS

        return profile


# Create singleton instance
CONFIG = Config()


def load_browser_profile(**overrides: Any) -> BrowserProfile:
    """Build a BrowserProfile from the environment.

    Keyword arguments that are not None override the environment.
    """
    settings = CONFIG.load_config()
    settings.update({key: value for key, value in overrides.items() if value is not None})
    logger.debug(f'Loaded browser profile settings: {sorted(settings)}')
    return BrowserProfile(**settings)
