"""MCP server configuration loaded from environment variables.

Uses ``pydantic-settings`` for env-var loading, type coercion and ``.env``
file support.  The Azure DevOps connection vars are checked lazily by
``require_remote_settings()`` so the administrative download tools (list,
cleanup, location) work without credentials.
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ado_mcp.errors import ConfigError

VERSION = "0.1.0"

SERVER_NAME = "ado-pipelines"

DEFAULT_CLEANUP_HOURS: float = 24.0


class Settings(BaseSettings):
    """Server settings — sourced from environment / ``.env`` file.

    Required to reach Azure DevOps (may be blank for local-only tools):
      ADO_ORGANIZATION, ADO_PROJECT, ADO_PAT
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    ADO_ORGANIZATION: str = ""
    ADO_PROJECT: str = ""
    ADO_PAT: str = ""
    ADO_API_VERSION: str = "7.1"

    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""  # optional rotating file log

    HTTP_TIMEOUT_S: float = Field(30.0, gt=0)
    DOWNLOAD_CHUNK_SIZE: int = Field(64 * 1024, ge=1)
    DOWNLOAD_TIMEOUT_S: float = Field(0.0, ge=0)  # 0 = no deadline

    @property
    def organization_url(self) -> str:
        """``ADO_ORGANIZATION`` as a base URL.

        Bare organization names become ``https://dev.azure.com/<name>``.
        """
        org = self.ADO_ORGANIZATION.strip().rstrip("/")
        if org and not org.startswith(("https://", "http://")):
            org = f"https://dev.azure.com/{org}"
        return org


def require_remote_settings(s: Settings) -> Settings:
    """Raise ``ConfigError`` listing every missing Azure DevOps var."""
    problems = [
        f"{name} is required"
        for name in ("ADO_ORGANIZATION", "ADO_PROJECT", "ADO_PAT")
        if not getattr(s, name).strip()
    ]
    if problems:
        raise ConfigError(problems)
    return s


settings = Settings()
