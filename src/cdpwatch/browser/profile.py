"""Browser profile: everything needed to connect to and watch one browser."""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from cdpwatch.browser.watchdogs.security_watchdog import SecurityPolicy
from cdpwatch.cdp.session import DEFAULT_DOMAINS

DEFAULT_CDP_URL = 'http://localhost:9222'


class BrowserProfile(BaseModel):
    """Connection and watchdog settings for a BrowserSession.

    Domain lists accept either a list or a comma separated string, so values
    can come straight from environment variables.
    """

    model_config = ConfigDict(
        extra='ignore',
        validate_assignment=True,
        revalidate_instances='always',
        from_attributes=True,
    )

    # Connection
    cdp_url: str = Field(default=DEFAULT_CDP_URL, description='ws:// endpoint or http://host:port DevTools address')
    connect_timeout: float = Field(default=10.0, gt=0, description='Seconds allowed for discovery and handshake')
    session_domains: list[str] = Field(
        default_factory=lambda: list(DEFAULT_DOMAINS),
        description='CDP domains enabled on every attached tab session',
    )
    event_bus_capacity: int = Field(default=1024, ge=1, description='Queue bound per event bus subscriber')

    # Downloads
    downloads_path: Path = Field(
        default_factory=lambda: Path.home() / 'Downloads' / 'cdpwatch',
        description='Directory for downloaded files',
    )
    max_completed_downloads: int = Field(default=100, ge=1, description='Finished downloads kept for queries')

    # Security
    allowed_domains: list[str] | None = Field(
        default=None,
        description='Only these domains may be visited, e.g. ["example.com", "*.trusted.org"]',
    )
    prohibited_domains: list[str] | None = Field(
        default=None,
        description='These domains may never be visited',
    )
    block_ip_addresses: bool = Field(default=False, description='Refuse URLs whose host is an IP literal')

    # Crash detection
    network_timeout: float = Field(default=10.0, gt=0, description='Seconds before a request counts as hung')
    check_interval: float = Field(default=5.0, gt=0, description='Seconds between hung request sweeps')

    @field_validator('allowed_domains', 'prohibited_domains', mode='before')
    @classmethod
    def _split_domains(cls, value: object) -> object:
        if isinstance(value, str):
            domains = [domain.strip() for domain in value.split(',') if domain.strip()]
            return domains or None
        return value

    @field_validator('downloads_path', mode='after')
    @classmethod
    def _expand_downloads_path(cls, value: Path) -> Path:
        return value.expanduser()

    def security_policy(self) -> SecurityPolicy:
        """Build the SecurityPolicy for this profile.

        Raises:
            pydantic.ValidationError: If both domain lists are set.
        """
        return SecurityPolicy(
            allowed_domains=self.allowed_domains,
            prohibited_domains=self.prohibited_domains,
            block_ip_addresses=self.block_ip_addresses,
        )
