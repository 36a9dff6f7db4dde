"""Web app deployer CLI (webapp-deploy).

Usage:
    webapp-deploy deploy                    # Reconcile and deploy from webapp.yaml
    webapp-deploy deploy --spec app.yaml    # Use another spec file
    webapp-deploy validate --spec app.yaml  # Check a spec without calling Azure

Flags override the matching environment variables.
"""

from __future__ import annotations

import dataclasses
import sys
from pathlib import Path

import click

from .config import DEFAULT_SPEC_FILE, AuthType, Config, ConfigurationError, get_cloud
from .main import main
from .models import WebAppSpec
from .spec_loader import load_webapp_spec

AUTH_TYPES = [t.value for t in AuthType]


def apply_overrides(
    config: Config,
    *,
    spec: Path | None = None,
    subscription: str | None = None,
    auth_type: str | None = None,
    cloud: str | None = None,
    non_interactive: bool = False,
) -> Config:
    """Return a copy of the configuration with command line values applied.

    Raises:
        ConfigurationError: If an override is invalid.
    """
    changes: dict[str, object] = {}
    if spec is not None:
        changes["spec_file"] = spec
    if subscription:
        changes["subscription_id"] = subscription
    if auth_type:
        changes["auth"] = dataclasses.replace(config.auth, auth_type=AuthType(auth_type))
    if cloud:
        changes["cloud"] = get_cloud(cloud)
        changes["cloud_explicit"] = True
    if non_interactive:
        changes["interactive"] = False
    return dataclasses.replace(config, **changes) if changes else config


def describe_spec(spec: WebAppSpec) -> list[str]:
    """Human readable summary of a normalized spec."""
    runtime = spec.runtime
    if runtime is None:
        runtime_text = "unchanged"
    elif runtime.is_docker:
        runtime_text = f"docker ({spec.docker.image if spec.docker else '?'})"
    else:
        runtime_text = f"{runtime.os.value}, java {runtime.java_version}, {runtime.web_container}"

    lines = [
        f"App:            {spec.app_name}",
        f"Resource group: {spec.resource_group}",
        f"Region:         {spec.region or '-'}",
        f"Plan:           {spec.plan_resource_group}/{spec.plan_name}",
        f"Pricing tier:   {spec.pricing_tier or '-'}",
        f"Runtime:        {runtime_text}",
    ]
    if spec.deployment_slot_name:
        lines.append(f"Slot:           {spec.deployment_slot_name}")
    lines.append(f"Artifacts:      {len(spec.artifacts)}")
    for artifact in spec.artifacts:
        lines.append(
            f"  - {artifact.file.name} ({artifact.deploy_type.value}) -> /{artifact.path or ''}"
        )
    external = spec.external_resources
    if external:
        lines.append(f"External:       {len(external)}")
        for resource in external:
            lines.append(f"  - {resource.directory} -> {resource.absolute_target_path}")
    return lines


@click.group()
@click.version_option(version="0.1.0", prog_name="webapp-deploy")
def cli() -> None:
    """Reconcile and deploy Java web apps to Azure App Service."""


@cli.command()
@click.option("--spec", "spec", type=click.Path(path_type=Path), help="Web app spec file")
@click.option("--subscription", help="Subscription id")
@click.option("--auth-type", type=click.Choice(AUTH_TYPES), help="Force one credential source")
@click.option("--cloud", help="AzureCloud, AzureChinaCloud or AzureUSGovernment")
@click.option("--non-interactive", is_flag=True, help="Never prompt or open a browser")
def deploy(
    spec: Path | None,
    subscription: str | None,
    auth_type: str | None,
    cloud: str | None,
    non_interactive: bool,
) -> None:
    """Reconcile the web app and deploy its artifacts."""
    try:
        config = apply_overrides(
            Config.from_env(),
            spec=spec,
            subscription=subscription,
            auth_type=auth_type,
            cloud=cloud,
            non_interactive=non_interactive,
        )
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    sys.exit(main(config))


@cli.command()
@click.option(
    "--spec",
    "spec",
    type=click.Path(path_type=Path),
    default=Path(DEFAULT_SPEC_FILE),
    show_default=True,
    help="Web app spec file",
)
def validate(spec: Path) -> None:
    """Load and normalize a spec without calling Azure."""
    try:
        webapp = load_webapp_spec(spec)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    click.echo(click.style(f"Spec {spec} is valid", fg="green"))
    for line in describe_spec(webapp):
        click.echo(line)


if __name__ == "__main__":
    cli()
