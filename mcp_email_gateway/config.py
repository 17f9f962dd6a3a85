from __future__ import annotations

from pydantic import BaseModel, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mcp_email_gateway.log import logger

IMPLICIT_TLS_SMTP_PORT = 465


class EmailServer(BaseModel):
    """Dial parameters for one side (IMAP or SMTP) of the account."""

    user_name: str = ""
    password: str = ""
    host: str
    port: int
    use_ssl: bool = True
    start_ssl: bool = False

    def masked(self) -> EmailServer:
        return self.model_copy(update={"password": "********"})


class Settings(BaseSettings):
    """Account configuration read from the environment (and an optional .env file).

    Variable names match the flat ``IMAP_*`` / ``SMTP_*`` convention used by
    most mail MCP servers, e.g. ``IMAP_HOST`` or ``SMTP_TLS``.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    imap_host: str = "imap.gmail.com"
    imap_port: int = 993
    imap_username: str = ""
    imap_password: str = ""
    imap_tls: bool = True

    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_tls: bool = True

    email_address: str = ""
    full_name: str = ""

    # Accepted so existing deployments keep loading, but not acted upon.
    use_oauth: bool = False
    oauth_client_id: str = ""
    oauth_client_secret: str = ""
    oauth_refresh_token: str = ""

    @model_validator(mode="after")
    def _require_imap_credentials(self) -> Settings:
        if (not self.imap_username or not self.imap_password) and not self.use_oauth:
            msg = "IMAP credentials are required (set IMAP_USERNAME and IMAP_PASSWORD, or USE_OAUTH=true)"
            raise ValueError(msg)
        return self

    @property
    def incoming(self) -> EmailServer:
        return EmailServer(
            user_name=self.imap_username,
            password=self.imap_password,
            host=self.imap_host,
            port=self.imap_port,
            use_ssl=self.imap_tls,
        )

    @property
    def outgoing(self) -> EmailServer:
        implicit_tls = self.smtp_tls and self.smtp_port == IMPLICIT_TLS_SMTP_PORT
        return EmailServer(
            user_name=self.smtp_username,
            password=self.smtp_password,
            host=self.smtp_host,
            port=self.smtp_port,
            use_ssl=implicit_tls,
            start_ssl=self.smtp_tls and not implicit_tls,
        )

    @property
    def sender(self) -> str:
        """The From header value used for every outbound message."""
        address = self.email_address or self.smtp_username
        if self.full_name:
            return f"{self.full_name} <{address}>"
        return address


_settings: Settings | None = None


def get_settings(reload: bool = False) -> Settings:
    global _settings
    if _settings is None or reload:
        _settings = Settings()
        if _settings.use_oauth:
            logger.warning("USE_OAUTH is set but OAuth is not supported; password login will be used")
    return _settings
