"""Azure App Service management-plane access.

Thin wrapper around WebSiteManagementClient and ResourceManagementClient.
Every getter treats an HTTP 404 as absence and returns None; any other
remote error propagates unchanged as an azure-core exception.

Clients are created on first use, so a run without a resolved subscription
only fails once an operation actually needs one.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from azure.core.exceptions import ResourceNotFoundError
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import ResourceGroup
from azure.mgmt.web import WebSiteManagementClient
from azure.mgmt.web.models import (
    AppServicePlan,
    CsmPublishingProfileOptions,
    NameValuePair,
    Site,
    SiteConfig,
    SiteConfigResource,
    SitePatchResource,
    SkuDescription,
    StringDictionary,
)

from .config import ConfigurationError
from .credentials import AzureCredential
from .models import DockerConfiguration, OperatingSystem, PricingTier, Runtime, WebAppSpec

logger = logging.getLogger(__name__)

# Configuration source that clones the production app into a new slot
PARENT_CONFIGURATION_SOURCE = "parent"


@dataclass(frozen=True)
class DeployTarget:
    """A reconciled web app or slot, ready to receive artifacts."""

    resource_group: str
    app_name: str
    slot_name: str | None
    default_host_name: str
    runtime: Runtime | None

    @property
    def display_name(self) -> str:
        if self.slot_name:
            return f"{self.app_name}/{self.slot_name}"
        return self.app_name

    @property
    def url(self) -> str:
        return f"https://{self.default_host_name}"

    @property
    def scm_host_name(self) -> str:
        """Kudu host: the first host label gets a ".scm" suffix."""
        label, _, domain = self.default_host_name.partition(".")
        return f"{label}.scm.{domain}"


@dataclass(frozen=True)
class PublishingCredentials:
    username: str
    password: str

    def __repr__(self) -> str:
        return f"PublishingCredentials(username={self.username!r})"


def _absent_on_404(call: Any, *args: Any) -> Any:
    """Run a getter and map a not-found response to None."""
    try:
        return call(*args)
    except ResourceNotFoundError:
        return None


def plan_os(plan: AppServicePlan) -> OperatingSystem:
    """Operating system of a plan: reserved plans are Linux."""
    return OperatingSystem.LINUX if plan.reserved else OperatingSystem.WINDOWS


def runtime_os_matches_plan(runtime: Runtime, plan: AppServicePlan) -> bool:
    if runtime.os == OperatingSystem.WINDOWS:
        return plan_os(plan) == OperatingSystem.WINDOWS
    return plan_os(plan) == OperatingSystem.LINUX


def site_kind(runtime: Runtime) -> str:
    match runtime.os:
        case OperatingSystem.DOCKER:
            return "app,linux,container"
        case OperatingSystem.LINUX:
            return "app,linux"
        case _:
            return "app"


def runtime_site_config(runtime: Runtime, docker: DockerConfiguration | None) -> dict[str, Any]:
    """Site configuration fields that carry the runtime."""
    if runtime.os == OperatingSystem.WINDOWS:
        return runtime.windows_site_config()
    image = docker.image if docker else None
    return {"linux_fx_version": runtime.linux_fx_version(image)}


def desired_app_settings(spec: WebAppSpec) -> dict[str, str]:
    """App settings from the spec plus registry credentials for docker apps."""
    settings = dict(spec.app_settings)
    if spec.runtime is not None and spec.runtime.is_docker and spec.docker is not None:
        settings.update(spec.docker.app_settings())
    return settings


class AppServiceClient:
    """Subscription-scoped access to resource groups, plans, web apps and slots."""

    def __init__(self, credential: AzureCredential, subscription_id: str | None) -> None:
        self._credential = credential
        self._subscription_id = subscription_id
        self._web: WebSiteManagementClient | None = None
        self._resources: ResourceManagementClient | None = None

    def _require_subscription(self) -> str:
        if not self._subscription_id:
            raise ConfigurationError(
                "No subscription selected. Set AZURE_SUBSCRIPTION_ID or pass --subscription."
            )
        return self._subscription_id

    def _client_kwargs(self) -> dict[str, Any]:
        cloud = self._credential.cloud
        return {
            "base_url": cloud.resource_manager,
            "credential_scopes": [cloud.management_scope],
        }

    @property
    def web(self) -> WebSiteManagementClient:
        if self._web is None:
            self._web = WebSiteManagementClient(
                self._credential.token_credential,
                self._require_subscription(),
                **self._client_kwargs(),
            )
        return self._web

    @property
    def resources(self) -> ResourceManagementClient:
        if self._resources is None:
            self._resources = ResourceManagementClient(
                self._credential.token_credential,
                self._require_subscription(),
                **self._client_kwargs(),
            )
        return self._resources

    # =========================================================================
    # Resource groups
    # =========================================================================

    def get_resource_group(self, name: str) -> ResourceGroup | None:
        return _absent_on_404(self.resources.resource_groups.get, name)

    def create_resource_group(self, name: str, region: str) -> ResourceGroup:
        logger.info("Creating resource group %s in %s", name, region)
        return self.resources.resource_groups.create_or_update(
            name, ResourceGroup(location=region)
        )

    # =========================================================================
    # App Service plans
    # =========================================================================

    def get_plan(self, resource_group: str, name: str) -> AppServicePlan | None:
        return _absent_on_404(self.web.app_service_plans.get, resource_group, name)

    def get_plan_by_id(self, plan_id: str) -> AppServicePlan | None:
        resource_group, name = _parse_resource_id(plan_id, "serverfarms")
        return self.get_plan(resource_group, name)

    def create_plan(
        self,
        resource_group: str,
        name: str,
        region: str,
        tier: PricingTier,
        os: OperatingSystem,
    ) -> AppServicePlan:
        linux = os != OperatingSystem.WINDOWS
        logger.info(
            "Creating app service plan %s",
            name,
            extra={"resource_group": resource_group, "tier": tier.size, "os": os.value},
        )
        plan = AppServicePlan(
            location=region,
            kind="linux" if linux else "app",
            reserved=linux,
            sku=SkuDescription(name=tier.size, tier=tier.tier),
        )
        return self.web.app_service_plans.begin_create_or_update(
            resource_group, name, plan
        ).result()

    def update_plan_tier(self, plan: AppServicePlan, tier: PricingTier) -> AppServicePlan:
        """Re-put an existing plan with a new SKU."""
        resource_group, name = _parse_resource_id(plan.id, "serverfarms")
        logger.info(
            "Updating pricing tier of app service plan %s to %s",
            name,
            tier.size,
            extra={"previous_tier": plan.sku.name if plan.sku else None},
        )
        plan.sku = SkuDescription(name=tier.size, tier=tier.tier)
        return self.web.app_service_plans.begin_create_or_update(
            resource_group, name, plan
        ).result()

    # =========================================================================
    # Web apps
    # =========================================================================

    def get_web_app(self, resource_group: str, name: str) -> Site | None:
        return _absent_on_404(self.web.web_apps.get, resource_group, name)

    def create_web_app(self, spec: WebAppSpec, plan: AppServicePlan) -> Site:
        runtime = _require_runtime(spec)
        settings = desired_app_settings(spec)
        site_config = SiteConfig(
            **runtime_site_config(runtime, spec.docker),
            app_settings=[NameValuePair(name=k, value=v) for k, v in settings.items()],
        )
        site = Site(
            location=plan.location,
            kind=site_kind(runtime),
            server_farm_id=plan.id,
            reserved=runtime.os != OperatingSystem.WINDOWS,
            site_config=site_config,
        )
        logger.info(
            "Creating web app %s",
            spec.app_name,
            extra={"resource_group": spec.resource_group, "plan": plan.name},
        )
        return self.web.web_apps.begin_create_or_update(
            spec.resource_group, spec.app_name, site
        ).result()

    def update_web_app(self, spec: WebAppSpec, site: Site, plan: AppServicePlan) -> Site:
        """Apply plan binding, runtime, docker configuration and app settings."""
        rg, name = spec.resource_group, spec.app_name
        logger.info("Updating web app %s", name, extra={"resource_group": rg})

        if (site.server_farm_id or "").lower() != (plan.id or "").lower():
            site = self.web.web_apps.update(rg, name, SitePatchResource(server_farm_id=plan.id))

        if spec.runtime is not None:
            self.web.web_apps.update_configuration(
                rg, name, SiteConfigResource(**runtime_site_config(spec.runtime, spec.docker))
            )

        self.merge_app_settings(rg, name, desired_app_settings(spec))
        return site

    def merge_app_settings(
        self, resource_group: str, name: str, settings: dict[str, str], slot: str | None = None
    ) -> None:
        """Add or overwrite app settings, keeping the ones not mentioned."""
        if not settings:
            return
        apps = self.web.web_apps
        if slot:
            current = apps.list_application_settings_slot(resource_group, name, slot)
        else:
            current = apps.list_application_settings(resource_group, name)
        merged = {**(current.properties or {}), **settings}
        if slot:
            apps.update_application_settings_slot(
                resource_group, name, slot, StringDictionary(properties=merged)
            )
        else:
            apps.update_application_settings(
                resource_group, name, StringDictionary(properties=merged)
            )

    # =========================================================================
    # Deployment slots
    # =========================================================================

    def get_slot(self, resource_group: str, app_name: str, slot: str) -> Site | None:
        return _absent_on_404(self.web.web_apps.get_slot, resource_group, app_name, slot)

    def create_slot(self, spec: WebAppSpec, parent: Site) -> Site:
        """Create a slot, cloning configuration and settings from its source.

        The configured app settings are applied on top of the cloned ones.
        """
        slot_spec = spec.deployment_slot
        if slot_spec is None:
            raise ConfigurationError("No deployment slot configured")
        rg, app = spec.resource_group, spec.app_name
        source = slot_spec.configuration_source

        site_config: SiteConfig | None = None
        settings: dict[str, str] = {}
        if source:
            source_slot = None if source.lower() == PARENT_CONFIGURATION_SOURCE else source
            site_config, settings = self._clone_source(rg, app, source_slot)

        logger.info(
            "Creating deployment slot %s of web app %s",
            slot_spec.name,
            app,
            extra={"configuration_source": source},
        )
        slot = Site(
            location=parent.location,
            kind=parent.kind,
            server_farm_id=parent.server_farm_id,
            reserved=parent.reserved,
            site_config=site_config,
        )
        created = self.web.web_apps.begin_create_or_update_slot(
            rg, app, slot_spec.name, slot
        ).result()
        self.merge_app_settings(
            rg, app, {**settings, **desired_app_settings(spec)}, slot=slot_spec.name
        )
        return created

    def _clone_source(
        self, resource_group: str, app_name: str, slot: str | None
    ) -> tuple[SiteConfig, dict[str, str]]:
        apps = self.web.web_apps
        if slot:
            if self.get_slot(resource_group, app_name, slot) is None:
                raise ConfigurationError(
                    f"Configuration source slot '{slot}' does not exist in web app '{app_name}'"
                )
            config = apps.get_configuration_slot(resource_group, app_name, slot)
            settings = apps.list_application_settings_slot(resource_group, app_name, slot)
        else:
            config = apps.get_configuration(resource_group, app_name)
            settings = apps.list_application_settings(resource_group, app_name)
        site_config = SiteConfig(**_copy_site_config(config))
        return site_config, dict(settings.properties or {})

    # =========================================================================
    # Runtime, lifecycle and publishing
    # =========================================================================

    def get_runtime(
        self, resource_group: str, name: str, slot: str | None = None
    ) -> Runtime | None:
        if slot:
            config = self.web.web_apps.get_configuration_slot(resource_group, name, slot)
        else:
            config = self.web.web_apps.get_configuration(resource_group, name)
        return Runtime.from_site_config(config)

    def start(self, target: DeployTarget) -> None:
        logger.info("Starting web app %s", target.display_name)
        if target.slot_name:
            self.web.web_apps.start_slot(target.resource_group, target.app_name, target.slot_name)
        else:
            self.web.web_apps.start(target.resource_group, target.app_name)

    def stop(self, target: DeployTarget) -> None:
        logger.info("Stopping web app %s", target.display_name)
        if target.slot_name:
            self.web.web_apps.stop_slot(target.resource_group, target.app_name, target.slot_name)
        else:
            self.web.web_apps.stop(target.resource_group, target.app_name)

    def get_publishing_credentials(self, target: DeployTarget) -> PublishingCredentials:
        apps = self.web.web_apps
        if target.slot_name:
            poller = apps.begin_list_publishing_credentials_slot(
                target.resource_group, target.app_name, target.slot_name
            )
        else:
            poller = apps.begin_list_publishing_credentials(
                target.resource_group, target.app_name
            )
        user = poller.result()
        return PublishingCredentials(
            username=user.publishing_user_name, password=user.publishing_password
        )

    def get_publishing_profile_xml(self, target: DeployTarget) -> str:
        """Publishing profile (FTP endpoints with secrets) as XML text."""
        options = CsmPublishingProfileOptions(format="Ftp")
        apps = self.web.web_apps
        if target.slot_name:
            chunks: Iterable[bytes] = apps.list_publishing_profile_xml_with_secrets_slot(
                target.resource_group, target.app_name, target.slot_name, options
            )
        else:
            chunks = apps.list_publishing_profile_xml_with_secrets(
                target.resource_group, target.app_name, options
            )
        return b"".join(chunks).decode("utf-8")


def _require_runtime(spec: WebAppSpec) -> Runtime:
    if spec.runtime is None:
        raise ConfigurationError(
            f"A runtime is required to create web app '{spec.app_name}'"
        )
    return spec.runtime


def _copy_site_config(config: SiteConfigResource) -> dict[str, Any]:
    """Fields of a live site configuration worth carrying into a new slot."""
    fields = (
        "linux_fx_version",
        "windows_fx_version",
        "java_version",
        "java_container",
        "java_container_version",
        "always_on",
        "http20_enabled",
        "min_tls_version",
        "ftps_state",
        "app_command_line",
        "use32_bit_worker_process",
        "web_sockets_enabled",
    )
    values = {name: getattr(config, name, None) for name in fields}
    return {name: value for name, value in values.items() if value is not None}


def _parse_resource_id(resource_id: str | None, resource_type: str) -> tuple[str, str]:
    """Return (resource_group, name) from an ARM id of the given type."""
    if not resource_id:
        raise ConfigurationError(f"Missing {resource_type} resource id")
    parts = resource_id.strip("/").split("/")
    lowered = [p.lower() for p in parts]
    try:
        resource_group = parts[lowered.index("resourcegroups") + 1]
        name = parts[lowered.index(resource_type.lower()) + 1]
    except (ValueError, IndexError) as e:
        raise ConfigurationError(f"Invalid {resource_type} resource id: {resource_id}") from e
    return resource_group, name
