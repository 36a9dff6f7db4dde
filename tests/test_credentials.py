"""Tests for the credential resolution chain."""

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from azure.core.exceptions import ClientAuthenticationError

from azure_mock import MockTokenCredential
from webapp_deployer.config import (
    AZURE_CHINA_CLOUD,
    AZURE_CLOUD,
    AuthConfig,
    AuthType,
    Config,
)
from webapp_deployer.credentials import (
    CredentialChain,
    LoginFailure,
    azure_cli_profile_path,
    mask_identity,
    read_azure_cli_profile,
    read_vscode_profile,
    vscode_settings_path,
)

SUBSCRIPTION_ID = "12345678-1234-1234-1234-123456789012"
TENANT_ID = "72f988bf-86f1-41af-91ab-2d7cd011db47"


def write_cli_profile(home: Path, environment: str = "AzureCloud") -> None:
    profile = {
        "subscriptions": [
            {
                "id": "87654321-4321-4321-4321-210987654321",
                "name": "Other",
                "isDefault": False,
                "tenantId": TENANT_ID,
                "environmentName": environment,
                "user": {"name": "developer@contoso.com", "type": "user"},
            },
            {
                "id": SUBSCRIPTION_ID,
                "name": "Dev",
                "isDefault": True,
                "tenantId": TENANT_ID,
                "environmentName": environment,
                "user": {"name": "developer@contoso.com", "type": "user"},
            },
        ]
    }
    path = azure_cli_profile_path(home, {})
    path.parent.mkdir(parents=True)
    # The Azure CLI writes a BOM
    path.write_text(json.dumps(profile), encoding="utf-8-sig")


def write_vscode_settings(home: Path, settings: dict[str, object]) -> None:
    path = vscode_settings_path(home, {})
    path.parent.mkdir(parents=True)
    path.write_text("// user settings\n" + json.dumps(settings))


def make_chain(
    config: Config, home: Path, environ: dict[str, str] | None = None
) -> CredentialChain:
    return CredentialChain(config, home=home, environ=environ or {})


class TestCredentialChainOrder:
    def test_sources_in_priority_order(self, tmp_path: Path) -> None:
        chain = make_chain(Config(), tmp_path)

        assert [s.auth_type for s in chain.sources] == [
            AuthType.SERVICE_PRINCIPAL,
            AuthType.MANAGED_IDENTITY,
            AuthType.VSCODE,
            AuthType.AZURE_CLI,
            AuthType.OAUTH2,
            AuthType.DEVICE_CODE,
        ]

    def test_nothing_available(self, tmp_path: Path) -> None:
        chain = make_chain(Config(interactive=False), tmp_path)

        with pytest.raises(LoginFailure, match="No credential source"):
            chain.resolve()

    def test_service_principal_wins_over_cli(self, tmp_path: Path) -> None:
        write_cli_profile(tmp_path)
        config = Config(
            auth=AuthConfig(tenant_id=TENANT_ID, client_id="app-id", client_secret="secret")
        )
        token_credential = MockTokenCredential("app-id")

        with patch(
            "webapp_deployer.credentials.ClientSecretCredential", return_value=token_credential
        ) as factory:
            credential = make_chain(config, tmp_path).resolve()

        assert credential.method == AuthType.SERVICE_PRINCIPAL
        assert credential.identity == "app-id"
        factory.assert_called_once_with(
            tenant_id=TENANT_ID,
            client_id="app-id",
            client_secret="secret",
            authority=AZURE_CLOUD.authority_host,
        )
        assert token_credential.get_token_calls == [(AZURE_CLOUD.management_scope,)]

    def test_certificate_service_principal(self, tmp_path: Path) -> None:
        certificate = tmp_path / "sp.pem"
        certificate.write_text("cert")
        config = Config(
            auth=AuthConfig(tenant_id=TENANT_ID, client_id="app-id", certificate_path=certificate)
        )

        with patch(
            "webapp_deployer.credentials.CertificateCredential",
            return_value=MockTokenCredential("app-id"),
        ) as factory:
            credential = make_chain(config, tmp_path).resolve()

        assert credential.method == AuthType.SERVICE_PRINCIPAL
        assert factory.call_args.kwargs["certificate_path"] == str(certificate)

    def test_managed_identity_from_environment(self, tmp_path: Path) -> None:
        environ = {"IDENTITY_ENDPOINT": "http://localhost:42356/msi/token"}

        with patch(
            "webapp_deployer.credentials.ManagedIdentityCredential",
            return_value=MockTokenCredential(),
        ):
            credential = make_chain(Config(), tmp_path, environ).resolve()

        assert credential.method == AuthType.MANAGED_IDENTITY
        assert credential.identity == "system-assigned"

    def test_user_assigned_managed_identity(self, tmp_path: Path) -> None:
        config = Config(auth=AuthConfig(managed_identity_client_id="uami-client-id"))

        with patch(
            "webapp_deployer.credentials.ManagedIdentityCredential",
            return_value=MockTokenCredential("uami-client-id"),
        ) as factory:
            credential = make_chain(config, tmp_path).resolve()

        factory.assert_called_once_with(client_id="uami-client-id")
        assert credential.identity == "uami-client-id"

    def test_azure_cli_profile(self, tmp_path: Path) -> None:
        write_cli_profile(tmp_path)

        with patch(
            "webapp_deployer.credentials.AzureCliCredential",
            return_value=MockTokenCredential(),
        ):
            credential = make_chain(Config(), tmp_path).resolve()

        assert credential.method == AuthType.AZURE_CLI
        assert credential.default_subscription_id == SUBSCRIPTION_ID
        assert credential.identity == "developer@contoso.com"

    def test_interactive_login_when_allowed(self, tmp_path: Path) -> None:
        with patch(
            "webapp_deployer.credentials.InteractiveBrowserCredential",
            return_value=MockTokenCredential(),
        ):
            credential = make_chain(Config(interactive=True), tmp_path).resolve()

        assert credential.method == AuthType.OAUTH2


class TestForcedAuthType:
    def test_forced_source_not_configured(self, tmp_path: Path) -> None:
        config = Config(auth=AuthConfig(auth_type=AuthType.AZURE_CLI))

        with pytest.raises(LoginFailure, match="azure_cli"):
            make_chain(config, tmp_path).resolve()

    def test_forced_source_skips_higher_priority(self, tmp_path: Path) -> None:
        write_cli_profile(tmp_path)
        config = Config(
            auth=AuthConfig(
                auth_type=AuthType.AZURE_CLI,
                tenant_id=TENANT_ID,
                client_id="app-id",
                client_secret="secret",
            )
        )

        with patch(
            "webapp_deployer.credentials.AzureCliCredential",
            return_value=MockTokenCredential(),
        ):
            credential = make_chain(config, tmp_path).resolve()

        assert credential.method == AuthType.AZURE_CLI

    def test_forced_device_code(self, tmp_path: Path) -> None:
        config = Config(interactive=True, auth=AuthConfig(auth_type=AuthType.DEVICE_CODE))

        with patch(
            "webapp_deployer.credentials.DeviceCodeCredential",
            return_value=MockTokenCredential(),
        ):
            credential = make_chain(config, tmp_path).resolve()

        assert credential.method == AuthType.DEVICE_CODE


class TestCloudConflict:
    def test_vscode_cloud_conflicts_with_explicit_cloud(self, tmp_path: Path) -> None:
        write_vscode_settings(tmp_path, {"azure.cloud": "AzureChinaCloud"})
        config = Config(cloud=AZURE_CLOUD, cloud_explicit=True)
        factory = MagicMock()

        with patch("webapp_deployer.credentials.VisualStudioCodeCredential", factory):
            with pytest.raises(LoginFailure, match="does not match"):
                make_chain(config, tmp_path).resolve()

        # A configured source that fails never falls through to the next one
        factory.assert_not_called()

    def test_vscode_cloud_used_when_not_explicit(self, tmp_path: Path) -> None:
        write_vscode_settings(
            tmp_path,
            {
                "azure.cloud": "AzureChinaCloud",
                "azure.resourceFilter": [f"{TENANT_ID}/{SUBSCRIPTION_ID}"],
            },
        )

        with patch(
            "webapp_deployer.credentials.VisualStudioCodeCredential",
            return_value=MockTokenCredential(),
        ):
            credential = make_chain(Config(), tmp_path).resolve()

        assert credential.method == AuthType.VSCODE
        assert credential.cloud == AZURE_CHINA_CLOUD
        assert credential.tenant_id == TENANT_ID
        assert credential.filtered_subscription_ids == (SUBSCRIPTION_ID,)

    def test_cli_cloud_conflict(self, tmp_path: Path) -> None:
        write_cli_profile(tmp_path, environment="AzureUSGovernment")
        config = Config(cloud=AZURE_CLOUD, cloud_explicit=True)

        with pytest.raises(LoginFailure, match="Azure CLI"):
            make_chain(config, tmp_path).resolve()


class TestTokenValidation:
    def test_rejected_token_is_login_failure(self, tmp_path: Path) -> None:
        write_cli_profile(tmp_path)
        token_credential = MockTokenCredential()
        token_credential.set_failure(ClientAuthenticationError("AADSTS700082: token expired"))

        with patch(
            "webapp_deployer.credentials.AzureCliCredential", return_value=token_credential
        ):
            with pytest.raises(LoginFailure, match="azure_cli"):
                make_chain(Config(), tmp_path).resolve()


class TestProfiles:
    def test_unreadable_vscode_settings_ignored(self, tmp_path: Path) -> None:
        path = tmp_path / "settings.json"
        path.write_text("{not json")

        assert read_vscode_profile(path) is None

    def test_vscode_settings_without_azure_keys(self, tmp_path: Path) -> None:
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"editor.fontSize": 14}))

        assert read_vscode_profile(path) is None

    def test_vscode_unknown_cloud(self, tmp_path: Path) -> None:
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"azure.cloud": "AzureGermanCloud"}))

        with pytest.raises(LoginFailure):
            read_vscode_profile(path)

    def test_cli_profile_without_subscriptions(self, tmp_path: Path) -> None:
        path = tmp_path / "azureProfile.json"
        path.write_text(json.dumps({"subscriptions": []}))

        assert read_azure_cli_profile(path) is None

    def test_cli_profile_honours_config_dir(self, tmp_path: Path) -> None:
        path = azure_cli_profile_path(tmp_path, {"AZURE_CONFIG_DIR": "/opt/az"})

        assert path == Path("/opt/az/azureProfile.json")


class TestMaskIdentity:
    def test_mask(self) -> None:
        assert mask_identity("developer@contoso.com") == "develope..."
        assert mask_identity("short") == "short"
        assert mask_identity(None) == "<unknown>"
