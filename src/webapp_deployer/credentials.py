"""Credential resolution chain.

Credential sources are tried in a fixed priority order:

1. Service principal (client secret or certificate)
2. Managed identity
3. VS Code Azure Account sign-in (settings.json profile)
4. Azure CLI sign-in (azureProfile.json)
5. Interactive browser login
6. Device code login

A source that is not configured is skipped. A source that IS configured
but cannot produce a working credential is a fatal LoginFailure; the chain
never falls through past it. In particular a developer-tool profile bound
to a different cloud than the one explicitly configured is rejected rather
than silently reconciled.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import ClientAuthenticationError
from azure.identity import (
    AzureCliCredential,
    CertificateCredential,
    ClientSecretCredential,
    CredentialUnavailableError,
    DeviceCodeCredential,
    InteractiveBrowserCredential,
    ManagedIdentityCredential,
    VisualStudioCodeCredential,
)

from .config import (
    AZURE_CLOUD,
    AuthType,
    CloudEnvironment,
    Config,
    ConfigurationError,
    get_cloud,
)

logger = logging.getLogger(__name__)

# Environment variables set by App Service, Functions, VMs and Arc when a
# managed identity endpoint is reachable
MANAGED_IDENTITY_ENV_VARS: tuple[str, ...] = (
    "IDENTITY_ENDPOINT",
    "MSI_ENDPOINT",
)

VSCODE_CLOUD_KEY = "azure.cloud"
VSCODE_FILTER_KEY = "azure.resourceFilter"


class LoginFailure(Exception):
    """Raised when no usable credential can be obtained.

    This is fatal: the run stops before touching any Azure resource.
    """

    pass


def _tenant_kwargs(tenant_id: str | None) -> dict[str, str]:
    # azure-identity picks its own default tenant when none is passed
    return {"tenant_id": tenant_id} if tenant_id else {}


def mask_identity(value: str | None) -> str:
    """Mask an identity for logging, keeping the first 8 characters."""
    if not value:
        return "<unknown>"
    return value[:8] + "..." if len(value) > 8 else value


@dataclass(frozen=True)
class AzureCredential:
    """An authenticated credential bound to one cloud.

    Created once per run by CredentialChain.resolve() and never mutated.
    """

    method: AuthType
    token_credential: TokenCredential
    cloud: CloudEnvironment
    identity: str | None = None
    tenant_id: str | None = None
    default_subscription_id: str | None = None
    filtered_subscription_ids: tuple[str, ...] = field(default_factory=tuple)

    @property
    def description(self) -> str:
        return f"{self.method.value} ({mask_identity(self.identity)})"


@dataclass(frozen=True)
class CredentialSource:
    """One entry of the chain: an availability check and an acquisition."""

    auth_type: AuthType
    is_available: Callable[[], bool]
    acquire: Callable[[], AzureCredential]


# =============================================================================
# Developer tool profiles
# =============================================================================


def _strip_json_comments(content: str) -> str:
    """Drop // line comments, which VS Code allows in settings.json."""
    return re.sub(r"^\s*//.*$", "", content, flags=re.MULTILINE)


def vscode_settings_path(home: Path, environ: Mapping[str, str]) -> Path:
    """Location of the VS Code user settings file on this platform."""
    if sys.platform.startswith("win"):
        appdata = environ.get("APPDATA") or str(home / "AppData" / "Roaming")
        return Path(appdata) / "Code" / "User" / "settings.json"
    if sys.platform == "darwin":
        return home / "Library" / "Application Support" / "Code" / "User" / "settings.json"
    return home / ".config" / "Code" / "User" / "settings.json"


def azure_cli_profile_path(home: Path, environ: Mapping[str, str]) -> Path:
    config_dir = environ.get("AZURE_CONFIG_DIR")
    base = Path(config_dir) if config_dir else home / ".azure"
    return base / "azureProfile.json"


@dataclass(frozen=True)
class VSCodeProfile:
    cloud: CloudEnvironment
    tenant_id: str | None
    filtered_subscription_ids: tuple[str, ...]


@dataclass(frozen=True)
class AzureCliProfile:
    cloud: CloudEnvironment
    tenant_id: str | None
    user: str | None
    default_subscription_id: str | None


def read_vscode_profile(path: Path) -> VSCodeProfile | None:
    """Read the Azure Account settings from a VS Code settings file.

    Returns:
        The profile, or None if the file is missing, unparseable or has no
        Azure settings.

    Raises:
        LoginFailure: If the settings name an unknown cloud.
    """
    if not path.is_file():
        return None
    try:
        settings = json.loads(_strip_json_comments(path.read_text(encoding="utf-8")))
    except (OSError, json.JSONDecodeError) as e:
        # settings.json is shared with every other extension; only our keys matter
        logger.warning(
            "Ignoring unreadable VS Code settings",
            extra={"path": str(path), "error": str(e)},
        )
        return None
    if not isinstance(settings, dict):
        return None
    if VSCODE_CLOUD_KEY not in settings and VSCODE_FILTER_KEY not in settings:
        return None

    try:
        cloud = get_cloud(settings.get(VSCODE_CLOUD_KEY) or AZURE_CLOUD.name)
    except ConfigurationError as e:
        raise LoginFailure(f"Unsupported cloud in VS Code settings: {e}") from e

    # Filter entries are "<tenant>/<subscription>"
    tenant_id: str | None = None
    subscription_ids: list[str] = []
    for entry in settings.get(VSCODE_FILTER_KEY) or []:
        tenant, _, subscription = str(entry).rpartition("/")
        if subscription:
            subscription_ids.append(subscription)
        if tenant and tenant_id is None:
            tenant_id = tenant
    return VSCodeProfile(
        cloud=cloud,
        tenant_id=tenant_id,
        filtered_subscription_ids=tuple(subscription_ids),
    )


def read_azure_cli_profile(path: Path) -> AzureCliProfile | None:
    """Read the default subscription from the Azure CLI profile.

    Returns:
        The profile, or None if the CLI has no signed-in subscriptions.

    Raises:
        LoginFailure: If the file cannot be parsed or names an unknown cloud.
    """
    if not path.is_file():
        return None
    try:
        # The CLI writes this file with a BOM
        profile = json.loads(path.read_text(encoding="utf-8-sig"))
    except (OSError, json.JSONDecodeError) as e:
        raise LoginFailure(f"Cannot read Azure CLI profile {path}: {e}") from e

    subscriptions: list[dict[str, Any]] = profile.get("subscriptions") or []
    if not subscriptions:
        return None
    default = next((s for s in subscriptions if s.get("isDefault")), subscriptions[0])

    try:
        cloud = get_cloud(default.get("environmentName") or AZURE_CLOUD.name)
    except ConfigurationError as e:
        raise LoginFailure(f"Unsupported cloud in Azure CLI profile: {e}") from e

    return AzureCliProfile(
        cloud=cloud,
        tenant_id=default.get("tenantId"),
        user=(default.get("user") or {}).get("name"),
        default_subscription_id=default.get("id") if default.get("isDefault") else None,
    )


# =============================================================================
# Chain
# =============================================================================


class CredentialChain:
    """Resolves exactly one AzureCredential from the configured sources."""

    def __init__(
        self,
        config: Config,
        *,
        home: Path | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._config = config
        self._home = home or Path.home()
        self._environ = os.environ if environ is None else environ

    @property
    def sources(self) -> list[CredentialSource]:
        """The chain in priority order."""
        return [
            CredentialSource(
                AuthType.SERVICE_PRINCIPAL,
                lambda: self._config.auth.has_service_principal,
                self._service_principal,
            ),
            CredentialSource(
                AuthType.MANAGED_IDENTITY,
                self._managed_identity_available,
                self._managed_identity,
            ),
            CredentialSource(
                AuthType.VSCODE,
                lambda: self._vscode_profile() is not None,
                self._vscode,
            ),
            CredentialSource(
                AuthType.AZURE_CLI,
                lambda: self._azure_cli_profile() is not None,
                self._azure_cli,
            ),
            CredentialSource(
                AuthType.OAUTH2,
                lambda: self._config.interactive,
                self._interactive_browser,
            ),
            CredentialSource(
                AuthType.DEVICE_CODE,
                lambda: self._config.interactive,
                self._device_code,
            ),
        ]

    def resolve(self) -> AzureCredential:
        """Walk the chain and return the first credential obtained.

        Raises:
            LoginFailure: If no source is available, a forced source is not
                configured, or a configured source fails.
        """
        auth_type = self._config.auth.auth_type
        sources = self.sources
        if auth_type != AuthType.AUTO:
            sources = [s for s in sources if s.auth_type == auth_type]

        for source in sources:
            if not source.is_available():
                if auth_type != AuthType.AUTO:
                    raise LoginFailure(
                        f"Authentication type '{auth_type.value}' was requested "
                        "but it is not configured"
                    )
                logger.debug(
                    "Credential source not available",
                    extra={"auth_method": source.auth_type.value},
                )
                continue

            credential = source.acquire()
            self._validate(credential)
            self._log_credential(credential)
            return credential

        raise LoginFailure(
            "No credential source is available. Configure a service principal, "
            "run on a host with a managed identity, sign in with the Azure CLI "
            "or VS Code, or allow interactive login."
        )

    # -------------------------------------------------------------------------
    # Availability
    # -------------------------------------------------------------------------

    def _managed_identity_available(self) -> bool:
        if self._config.auth.managed_identity_client_id:
            return True
        if self._config.auth.auth_type == AuthType.MANAGED_IDENTITY:
            return True
        return any(self._environ.get(var) for var in MANAGED_IDENTITY_ENV_VARS)

    def _vscode_profile(self) -> VSCodeProfile | None:
        return read_vscode_profile(vscode_settings_path(self._home, self._environ))

    def _azure_cli_profile(self) -> AzureCliProfile | None:
        return read_azure_cli_profile(azure_cli_profile_path(self._home, self._environ))

    def _check_cloud_conflict(self, tool: str, tool_cloud: CloudEnvironment) -> None:
        if self._config.cloud_explicit and tool_cloud != self._config.cloud:
            raise LoginFailure(
                f"The Azure cloud of {tool} '{tool_cloud.name}' does not match the "
                f"configured cloud '{self._config.cloud.name}'. Sign in to "
                f"'{self._config.cloud.name}' in {tool} or change AZURE_CLOUD."
            )

    # -------------------------------------------------------------------------
    # Acquisition
    # -------------------------------------------------------------------------

    def _service_principal(self) -> AzureCredential:
        auth = self._config.auth
        cloud = self._config.cloud
        token_credential: TokenCredential
        if auth.certificate_path:
            token_credential = CertificateCredential(
                tenant_id=auth.tenant_id,
                client_id=auth.client_id,
                certificate_path=str(auth.certificate_path),
                password=auth.certificate_password,
                authority=cloud.authority_host,
            )
        else:
            token_credential = ClientSecretCredential(
                tenant_id=auth.tenant_id,
                client_id=auth.client_id,
                client_secret=auth.client_secret,
                authority=cloud.authority_host,
            )
        return AzureCredential(
            method=AuthType.SERVICE_PRINCIPAL,
            token_credential=token_credential,
            cloud=cloud,
            identity=auth.client_id,
            tenant_id=auth.tenant_id,
        )

    def _managed_identity(self) -> AzureCredential:
        client_id = self._config.auth.managed_identity_client_id
        if client_id:
            logger.info(
                "Using user-assigned managed identity",
                extra={"client_id": mask_identity(client_id)},
            )
            token_credential = ManagedIdentityCredential(client_id=client_id)
        else:
            logger.info("Using system-assigned managed identity")
            token_credential = ManagedIdentityCredential()
        return AzureCredential(
            method=AuthType.MANAGED_IDENTITY,
            token_credential=token_credential,
            cloud=self._config.cloud,
            identity=client_id or "system-assigned",
        )

    def _vscode(self) -> AzureCredential:
        profile = self._vscode_profile()
        if profile is None:
            raise LoginFailure(
                "Cannot get Azure profile from VS Code, please sign in with the "
                "Azure Account extension"
            )
        self._check_cloud_conflict("VS Code", profile.cloud)
        token_credential = VisualStudioCodeCredential(
            authority=profile.cloud.authority_host,
            **_tenant_kwargs(profile.tenant_id),
        )
        return AzureCredential(
            method=AuthType.VSCODE,
            token_credential=token_credential,
            cloud=profile.cloud,
            identity=profile.tenant_id,
            tenant_id=profile.tenant_id,
            filtered_subscription_ids=profile.filtered_subscription_ids,
        )

    def _azure_cli(self) -> AzureCredential:
        profile = self._azure_cli_profile()
        if profile is None:
            raise LoginFailure("Azure CLI is not signed in, please run 'az login'")
        self._check_cloud_conflict("Azure CLI", profile.cloud)
        return AzureCredential(
            method=AuthType.AZURE_CLI,
            token_credential=AzureCliCredential(**_tenant_kwargs(profile.tenant_id)),
            cloud=profile.cloud,
            identity=profile.user,
            tenant_id=profile.tenant_id,
            default_subscription_id=profile.default_subscription_id,
        )

    def _interactive_browser(self) -> AzureCredential:
        auth = self._config.auth
        token_credential = InteractiveBrowserCredential(
            authority=self._config.cloud.authority_host,
            **_tenant_kwargs(auth.tenant_id),
        )
        return AzureCredential(
            method=AuthType.OAUTH2,
            token_credential=token_credential,
            cloud=self._config.cloud,
            tenant_id=auth.tenant_id,
        )

    def _device_code(self) -> AzureCredential:
        auth = self._config.auth
        token_credential = DeviceCodeCredential(
            authority=self._config.cloud.authority_host,
            **_tenant_kwargs(auth.tenant_id),
        )
        return AzureCredential(
            method=AuthType.DEVICE_CODE,
            token_credential=token_credential,
            cloud=self._config.cloud,
            tenant_id=auth.tenant_id,
        )

    # -------------------------------------------------------------------------

    def _validate(self, credential: AzureCredential) -> None:
        """Prove the credential works by requesting a management token."""
        try:
            credential.token_credential.get_token(credential.cloud.management_scope)
        except (ClientAuthenticationError, CredentialUnavailableError) as e:
            raise LoginFailure(
                f"Failed to authenticate with {credential.method.value}: {e}"
            ) from e

    def _log_credential(self, credential: AzureCredential) -> None:
        if credential.cloud != AZURE_CLOUD:
            logger.info("Using Azure environment: %s", credential.cloud.name)
        logger.info(
            "Authenticated with %s",
            credential.description,
            extra={
                "auth_method": credential.method.value,
                "identity": mask_identity(credential.identity),
                "cloud": credential.cloud.name,
            },
        )
