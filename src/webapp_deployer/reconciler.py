"""Create-or-update reconciliation of the App Service resources of one app.

Resources are reconciled in dependency order:
1. Resource group (created only when a lookup reports it absent)
2. App Service plan (created, or its pricing tier updated in place)
3. Web app, or a deployment slot under an existing web app

Nothing is ever deleted or rolled back. Resources created before a failure
stay in place and the next run picks them up through the update path.

Deployment slots are created when absent but an existing slot is returned
unchanged: updating slot configuration is not supported.
"""

from __future__ import annotations

import logging

from azure.mgmt.web.models import AppServicePlan, Site

from .appservice import AppServiceClient, DeployTarget, plan_os, runtime_os_matches_plan
from .config import ConfigurationError
from .models import DEFAULT_PRICING_TIER, OperatingSystem, PricingTier, Runtime, WebAppSpec

logger = logging.getLogger(__name__)


class ResourceReconciler:
    """Ensures the web app (or slot) described by a spec exists with the desired shape."""

    def __init__(self, client: AppServiceClient) -> None:
        self._client = client

    def reconcile(self, spec: WebAppSpec) -> DeployTarget:
        """Create or update the target of a deployment.

        Returns:
            The reconciled web app or slot.

        Raises:
            ConfigurationError: Missing runtime for a new app, a slot under a
                missing app, or a plan whose OS does not match the runtime.
            azure.core.exceptions.AzureError: Any remote failure other than a
                not-found lookup.
        """
        if spec.deployment_slot is None:
            site = self._client.get_web_app(spec.resource_group, spec.app_name)
            if site is None:
                site = self._create_web_app(spec)
            else:
                site = self._update_web_app(spec, site)
            return self._target(spec, site, slot_name=None)

        parent = self._client.get_web_app(spec.resource_group, spec.app_name)
        if parent is None:
            raise ConfigurationError(
                f"Cannot create deployment slot '{spec.deployment_slot.name}': "
                f"web app '{spec.app_name}' does not exist in resource group "
                f"'{spec.resource_group}'"
            )

        slot_name = spec.deployment_slot.name
        slot = self._client.get_slot(spec.resource_group, spec.app_name, slot_name)
        if slot is None:
            slot = self._client.create_slot(spec, parent)
        else:
            logger.info(
                "Deployment slot %s already exists, slot configuration is not updated",
                slot_name,
                extra={"app": spec.app_name},
            )
        return self._target(spec, slot, slot_name=slot_name)

    # =========================================================================
    # Create path
    # =========================================================================

    def _create_web_app(self, spec: WebAppSpec) -> Site:
        if spec.runtime is None:
            raise ConfigurationError(
                f"Web app '{spec.app_name}' does not exist and no runtime is configured "
                "to create it"
            )
        region = self._ensure_resource_group(spec)
        plan = self._client.get_plan(spec.plan_resource_group, spec.plan_name)
        if plan is None:
            plan = self._create_plan(spec, spec.runtime, region)
        else:
            self._check_plan_os(plan, spec.runtime)
        return self._client.create_web_app(spec, plan)

    def _ensure_resource_group(self, spec: WebAppSpec) -> str:
        """Get or create the app's resource group and return the region to use."""
        group = self._client.get_resource_group(spec.resource_group)
        if group is not None:
            return spec.region or group.location
        if not spec.region:
            raise ConfigurationError(
                f"Resource group '{spec.resource_group}' does not exist and no region "
                "is configured to create it"
            )
        self._client.create_resource_group(spec.resource_group, spec.region)
        return spec.region

    def _create_plan(self, spec: WebAppSpec, runtime: Runtime, region: str) -> AppServicePlan:
        if spec.plan_resource_group != spec.resource_group:
            plan_group = self._client.get_resource_group(spec.plan_resource_group)
            if plan_group is None:
                self._client.create_resource_group(spec.plan_resource_group, region)
        tier = PricingTier.from_string(spec.pricing_tier or DEFAULT_PRICING_TIER)
        return self._client.create_plan(
            spec.plan_resource_group, spec.plan_name, region, tier, runtime.os
        )

    # =========================================================================
    # Update path
    # =========================================================================

    def _update_web_app(self, spec: WebAppSpec, site: Site) -> Site:
        if spec.app_service_plan_name:
            plan = self._client.get_plan(spec.plan_resource_group, spec.plan_name)
            if plan is None:
                runtime = spec.runtime or self._live_runtime(spec)
                if runtime is None:
                    raise ConfigurationError(
                        f"App service plan '{spec.plan_name}' does not exist and no runtime "
                        "is configured to choose its operating system"
                    )
                region = spec.region or site.location
                plan = self._create_plan(spec, runtime, region)
            else:
                plan = self._update_tier(spec, plan)
        else:
            plan = self._client.get_plan_by_id(site.server_farm_id)
            if plan is None:
                raise ConfigurationError(
                    f"Current app service plan of web app '{spec.app_name}' not found: "
                    f"{site.server_farm_id}"
                )
            plan = self._update_tier(spec, plan)

        if spec.runtime is not None:
            self._check_plan_os(plan, spec.runtime)
        return self._client.update_web_app(spec, site, plan)

    def _update_tier(self, spec: WebAppSpec, plan: AppServicePlan) -> AppServicePlan:
        if not spec.pricing_tier:
            return plan
        tier = PricingTier.from_string(spec.pricing_tier)
        current = plan.sku.name if plan.sku else None
        if tier.matches(current):
            return plan
        return self._client.update_plan_tier(plan, tier)

    def _live_runtime(self, spec: WebAppSpec) -> Runtime | None:
        return self._client.get_runtime(spec.resource_group, spec.app_name)

    @staticmethod
    def _check_plan_os(plan: AppServicePlan, runtime: Runtime) -> None:
        if not runtime_os_matches_plan(runtime, plan):
            raise ConfigurationError(
                f"App service plan '{plan.name}' runs {plan_os(plan).value}, which cannot "
                f"host a {runtime.os.value} runtime"
            )

    # =========================================================================
    # Result
    # =========================================================================

    def _target(self, spec: WebAppSpec, site: Site, slot_name: str | None) -> DeployTarget:
        runtime = self._client.get_runtime(spec.resource_group, spec.app_name, slot_name)
        if runtime is None:
            runtime = spec.runtime
        if runtime is None and site.kind and "container" in site.kind.lower():
            runtime = Runtime(os=OperatingSystem.DOCKER)
        target = DeployTarget(
            resource_group=spec.resource_group,
            app_name=spec.app_name,
            slot_name=slot_name,
            default_host_name=site.default_host_name,
            runtime=runtime,
        )
        logger.info(
            "Reconciled web app %s",
            target.display_name,
            extra={"host_name": target.default_host_name},
        )
        return target
