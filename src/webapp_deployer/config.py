"""Run configuration with validation.

Everything that controls HOW a run authenticates and talks to Azure lives
here. WHAT gets deployed is described by the application spec file
(see spec_loader.py / models.py).
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


class AuthType(str, Enum):
    """Credential sources, in the order the chain tries them."""

    AUTO = "auto"
    SERVICE_PRINCIPAL = "service_principal"
    MANAGED_IDENTITY = "managed_identity"
    VSCODE = "vscode"
    AZURE_CLI = "azure_cli"
    OAUTH2 = "oauth2"
    DEVICE_CODE = "device_code"


@dataclass(frozen=True)
class CloudEnvironment:
    """Endpoints of one Azure cloud."""

    name: str
    authority_host: str
    resource_manager: str
    app_service_suffix: str

    @property
    def management_scope(self) -> str:
        return f"{self.resource_manager}/.default"


AZURE_CLOUD = CloudEnvironment(
    name="AzureCloud",
    authority_host="https://login.microsoftonline.com",
    resource_manager="https://management.azure.com",
    app_service_suffix="azurewebsites.net",
)
AZURE_CHINA_CLOUD = CloudEnvironment(
    name="AzureChinaCloud",
    authority_host="https://login.chinacloudapi.cn",
    resource_manager="https://management.chinacloudapi.cn",
    app_service_suffix="chinacloudsites.cn",
)
AZURE_US_GOVERNMENT = CloudEnvironment(
    name="AzureUSGovernment",
    authority_host="https://login.microsoftonline.us",
    resource_manager="https://management.usgovcloudapi.net",
    app_service_suffix="azurewebsites.us",
)

KNOWN_CLOUDS: dict[str, CloudEnvironment] = {
    cloud.name.lower(): cloud for cloud in (AZURE_CLOUD, AZURE_CHINA_CLOUD, AZURE_US_GOVERNMENT)
}


def get_cloud(name: str) -> CloudEnvironment:
    """Look up a cloud by name (case-insensitive).

    Raises:
        ConfigurationError: If the cloud is unknown.
    """
    cloud = KNOWN_CLOUDS.get(name.strip().lower())
    if cloud is None:
        valid = [c.name for c in KNOWN_CLOUDS.values()]
        raise ConfigurationError(f"AZURE_CLOUD must be one of {valid}: {name}")
    return cloud


DEFAULT_SPEC_FILE = "webapp.yaml"
DEFAULT_HTTP_TIMEOUT_SECONDS = 600
MIN_HTTP_TIMEOUT_SECONDS = 60
MAX_HTTP_TIMEOUT_SECONDS = 3600

# Limits
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max spec file
MAX_APP_NAME_LENGTH = 60
MAX_RESOURCE_GROUP_NAME_LENGTH = 90

VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class AuthConfig:
    """Credential settings.

    Secrets are only read from the environment and are never logged.
    """

    auth_type: AuthType = AuthType.AUTO
    tenant_id: str | None = None
    client_id: str | None = None
    client_secret: str | None = field(default=None, repr=False)
    certificate_path: Path | None = None
    certificate_password: str | None = field(default=None, repr=False)
    managed_identity_client_id: str | None = None

    @property
    def has_service_principal(self) -> bool:
        """True when enough is configured to attempt a service principal login."""
        return bool(
            self.tenant_id
            and self.client_id
            and (self.client_secret or self.certificate_path)
        )


@dataclass(frozen=True)
class Config:
    """Run configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-deployment.
    """

    spec_file: Path = field(default_factory=lambda: Path(DEFAULT_SPEC_FILE))
    cloud: CloudEnvironment = AZURE_CLOUD
    # True when the cloud was set explicitly rather than defaulted
    cloud_explicit: bool = False
    subscription_id: str | None = None
    auth: AuthConfig = field(default_factory=AuthConfig)
    interactive: bool = False
    http_timeout_seconds: int = DEFAULT_HTTP_TIMEOUT_SECONDS
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        import re

        errors: list[str] = []

        if self.subscription_id and not re.match(
            VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()
        ):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not (
            MIN_HTTP_TIMEOUT_SECONDS <= self.http_timeout_seconds <= MAX_HTTP_TIMEOUT_SECONDS
        ):
            errors.append(
                f"WEBAPP_HTTP_TIMEOUT must be between {MIN_HTTP_TIMEOUT_SECONDS} "
                f"and {MAX_HTTP_TIMEOUT_SECONDS} seconds"
            )

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        auth = self.auth
        if auth.auth_type == AuthType.SERVICE_PRINCIPAL and not auth.has_service_principal:
            errors.append(
                "AZURE_TENANT_ID, AZURE_CLIENT_ID and either AZURE_CLIENT_SECRET or "
                "AZURE_CLIENT_CERTIFICATE_PATH are required for service_principal auth"
            )
        if auth.client_secret and auth.certificate_path:
            errors.append(
                "AZURE_CLIENT_SECRET and AZURE_CLIENT_CERTIFICATE_PATH are mutually exclusive"
            )
        if auth.certificate_path and not auth.certificate_path.exists():
            errors.append(f"Client certificate does not exist: {auth.certificate_path}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            WEBAPP_SPEC_FILE: Path to the application spec YAML (default: webapp.yaml)
            AZURE_CLOUD: AzureCloud, AzureChinaCloud or AzureUSGovernment
            AZURE_SUBSCRIPTION_ID: Target subscription (optional)
            AZURE_AUTH_TYPE: One of the AuthType values (default: auto)
            AZURE_TENANT_ID / AZURE_CLIENT_ID: Service principal identity
            AZURE_CLIENT_SECRET: Service principal secret
            AZURE_CLIENT_CERTIFICATE_PATH / AZURE_CLIENT_CERTIFICATE_PASSWORD:
                Service principal certificate
            AZURE_MANAGED_IDENTITY_CLIENT_ID: User-assigned managed identity
            WEBAPP_INTERACTIVE: Allow prompts and browser login (default: stdin is a TTY)
            WEBAPP_HTTP_TIMEOUT: Timeout for artifact uploads in seconds (default: 600)
            LOG_LEVEL: Root log level (default: INFO)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_auth_type(value: str | None) -> AuthType:
            if not value:
                return AuthType.AUTO
            try:
                return AuthType(value.lower())
            except ValueError as e:
                valid = [t.value for t in AuthType]
                raise ConfigurationError(f"AZURE_AUTH_TYPE must be one of {valid}: {value}") from e

        cloud_name = os.environ.get("AZURE_CLOUD")
        certificate_path = os.environ.get("AZURE_CLIENT_CERTIFICATE_PATH")

        return cls(
            spec_file=Path(os.environ.get("WEBAPP_SPEC_FILE", DEFAULT_SPEC_FILE)),
            cloud=get_cloud(cloud_name) if cloud_name else AZURE_CLOUD,
            cloud_explicit=bool(cloud_name),
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID") or None,
            auth=AuthConfig(
                auth_type=get_auth_type(os.environ.get("AZURE_AUTH_TYPE")),
                tenant_id=os.environ.get("AZURE_TENANT_ID") or None,
                client_id=os.environ.get("AZURE_CLIENT_ID") or None,
                client_secret=os.environ.get("AZURE_CLIENT_SECRET") or None,
                certificate_path=Path(certificate_path) if certificate_path else None,
                certificate_password=os.environ.get("AZURE_CLIENT_CERTIFICATE_PASSWORD") or None,
                managed_identity_client_id=(
                    os.environ.get("AZURE_MANAGED_IDENTITY_CLIENT_ID") or None
                ),
            ),
            interactive=get_bool("WEBAPP_INTERACTIVE", sys.stdin.isatty()),
            http_timeout_seconds=get_int("WEBAPP_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT_SECONDS),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )
