"""Application spec loading with validation.

The spec file comes in two schema versions. Each version is parsed into its
own raw model (a tagged union on ``schemaVersion``) and a per-version
translator normalizes it into the single WebAppSpec the rest of the tool
consumes.

SECURITY: File size is bounded before reading. Input validation is
performed at the boundary.
"""

from __future__ import annotations

import logging
import posixpath
from pathlib import Path
from typing import Annotated, Any, Literal

import yaml
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES, ConfigurationError
from .models import (
    JAVA_SE,
    ArtifactDescriptor,
    DeploymentSlotSpec,
    DeployType,
    DockerConfiguration,
    OperatingSystem,
    ResourceSpec,
    Runtime,
    WebAppSpec,
)

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA_VERSION = "v2"
# Legacy schema default when only javaVersion is given
DEFAULT_V1_WEB_CONTAINER = "tomcat 8.5"


class SpecLoadError(ConfigurationError):
    """Raised when spec loading or validation fails."""

    pass


# =============================================================================
# Raw schema shapes
# =============================================================================


class _CommonSchema(BaseModel):
    """Fields shared by every schema version."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    resource_group: str = Field(alias="resourceGroup")
    app_name: str = Field(alias="appName")
    region: str | None = None
    pricing_tier: str | None = Field(None, alias="pricingTier")
    app_service_plan_name: str | None = Field(None, alias="appServicePlanName")
    app_service_plan_resource_group: str | None = Field(
        None, alias="appServicePlanResourceGroup"
    )
    app_settings: dict[str, str] = Field(default_factory=dict, alias="appSettings")
    deployment_slot: DeploymentSlotSpec | None = Field(None, alias="deploymentSlot")
    stop_app_during_deployment: bool = Field(False, alias="stopAppDuringDeployment")
    final_name: str | None = Field(None, alias="finalName")


class ContainerSettings(BaseModel):
    """Legacy docker settings."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    image_name: str = Field(alias="imageName")
    registry_url: str | None = Field(None, alias="registryUrl")
    username: str | None = None
    password: str | None = Field(None, repr=False)


class V1Schema(_CommonSchema):
    """Legacy flat schema: one of javaVersion, linuxRuntime or containerSettings."""

    schema_version: Literal["v1"] = Field(alias="schemaVersion")
    java_version: str | None = Field(None, alias="javaVersion")
    java_web_container: str | None = Field(None, alias="javaWebContainer")
    linux_runtime: str | None = Field(None, alias="linuxRuntime")
    container_settings: ContainerSettings | None = Field(None, alias="containerSettings")
    resources: list[ResourceSpec] = Field(default_factory=list)


class RuntimeSchema(BaseModel):
    """Current runtime block."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    os: OperatingSystem
    java_version: str | None = Field(None, alias="javaVersion")
    web_container: str | None = Field(None, alias="webContainer")
    image: str | None = None
    registry_url: str | None = Field(None, alias="registryUrl")
    username: str | None = None
    password: str | None = Field(None, repr=False)


class DeploymentSchema(BaseModel):
    model_config = {"extra": "ignore"}

    resources: list[ResourceSpec] = Field(default_factory=list)


class V2Schema(_CommonSchema):
    """Current schema with nested runtime and deployment blocks."""

    schema_version: Literal["v2"] = Field(alias="schemaVersion")
    runtime: RuntimeSchema | None = None
    deployment: DeploymentSchema = Field(default_factory=DeploymentSchema)


RawSpec = Annotated[V1Schema | V2Schema, Field(discriminator="schema_version")]
_RAW_SPEC_ADAPTER: TypeAdapter[V1Schema | V2Schema] = TypeAdapter(RawSpec)


# =============================================================================
# Translators
# =============================================================================


def parse_linux_runtime(value: str) -> Runtime:
    """Parse a legacy linuxRuntime string.

    Examples: "tomcat 9.0-java11", "jbosseap 7.2-java8", "jre8", "java11".
    """
    container, sep, java = value.strip().rpartition("-")
    if not sep:
        # Bare java runtime: "jre8" / "java11"
        return Runtime(os=OperatingSystem.LINUX, java_version=value, web_container=JAVA_SE)
    return Runtime(os=OperatingSystem.LINUX, java_version=java, web_container=container)


def _common_fields(raw: _CommonSchema) -> dict[str, Any]:
    return {
        "resource_group": raw.resource_group,
        "app_name": raw.app_name,
        "region": raw.region,
        "pricing_tier": raw.pricing_tier,
        "app_service_plan_name": raw.app_service_plan_name,
        "app_service_plan_resource_group": raw.app_service_plan_resource_group,
        "app_settings": raw.app_settings,
        "deployment_slot": raw.deployment_slot,
        "stop_app_during_deployment": raw.stop_app_during_deployment,
        "final_name": raw.final_name,
    }


def _translate_v1(raw: V1Schema) -> dict[str, Any]:
    configured = [
        name
        for name, value in (
            ("javaVersion", raw.java_version),
            ("linuxRuntime", raw.linux_runtime),
            ("containerSettings", raw.container_settings),
        )
        if value
    ]
    if len(configured) > 1:
        raise SpecLoadError(f"Conflicting runtime settings, use only one of: {configured}")

    runtime: Runtime | None = None
    docker: DockerConfiguration | None = None
    if raw.java_version:
        runtime = Runtime(
            os=OperatingSystem.WINDOWS,
            java_version=raw.java_version,
            web_container=raw.java_web_container or DEFAULT_V1_WEB_CONTAINER,
        )
    elif raw.linux_runtime:
        runtime = parse_linux_runtime(raw.linux_runtime)
    elif raw.container_settings:
        runtime = Runtime(os=OperatingSystem.DOCKER)
        docker = DockerConfiguration(
            image=raw.container_settings.image_name,
            registry_url=raw.container_settings.registry_url,
            username=raw.container_settings.username,
            password=raw.container_settings.password,
        )

    return {**_common_fields(raw), "runtime": runtime, "docker": docker, "resources": raw.resources}


def _translate_v2(raw: V2Schema) -> dict[str, Any]:
    runtime: Runtime | None = None
    docker: DockerConfiguration | None = None
    if raw.runtime is not None:
        if raw.runtime.os == OperatingSystem.DOCKER:
            if not raw.runtime.image:
                raise SpecLoadError("runtime.image is required when runtime.os is docker")
            runtime = Runtime(os=OperatingSystem.DOCKER)
            docker = DockerConfiguration(
                image=raw.runtime.image,
                registry_url=raw.runtime.registry_url,
                username=raw.runtime.username,
                password=raw.runtime.password,
            )
        else:
            runtime = Runtime(
                os=raw.runtime.os,
                java_version=raw.runtime.java_version,
                web_container=raw.runtime.web_container or JAVA_SE,
            )

    return {
        **_common_fields(raw),
        "runtime": runtime,
        "docker": docker,
        "resources": raw.deployment.resources,
    }


def _resolve_resource(resource: ResourceSpec, base_dir: Path) -> ResourceSpec:
    if resource.directory.is_absolute():
        return resource
    return resource.model_copy(update={"directory": base_dir / resource.directory})


def expand_artifacts(resources: list[ResourceSpec]) -> list[ArtifactDescriptor]:
    """Turn every non-external resource into per-file artifact descriptors.

    Files keep their sub-directory below the resource directory, appended to
    the resource's target path.
    """
    artifacts: list[ArtifactDescriptor] = []
    for resource in resources:
        if resource.is_external:
            continue
        for file in resource.list_files():
            relative_dir = file.parent.relative_to(resource.directory).as_posix()
            parts = [p for p in (resource.target_path, relative_dir) if p and p != "."]
            path = posixpath.join(*parts) if parts else None
            artifacts.append(
                ArtifactDescriptor(file=file, deploy_type=DeployType.from_file(file), path=path)
            )
    return artifacts


def normalize_spec(raw_data: dict[str, Any], base_dir: Path) -> WebAppSpec:
    """Validate raw spec data and normalize it to a WebAppSpec.

    Raises:
        SpecLoadError: If the data does not describe a valid web app.
    """
    data = dict(raw_data)
    data["schemaVersion"] = str(data.get("schemaVersion") or DEFAULT_SCHEMA_VERSION).lower()

    try:
        raw = _RAW_SPEC_ADAPTER.validate_python(data)
        fields = _translate_v1(raw) if isinstance(raw, V1Schema) else _translate_v2(raw)
        resources = [_resolve_resource(r, base_dir) for r in fields["resources"]]
        fields["resources"] = resources
        fields["artifacts"] = expand_artifacts(resources)
        return WebAppSpec.model_validate(fields)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Invalid web app spec:\n{error_list}") from e


def load_webapp_spec(spec_path: Path) -> WebAppSpec:
    """Load and normalize a web app spec from YAML.

    Args:
        spec_path: Path to the spec file. Relative resource directories are
            resolved against the file's directory.

    Returns:
        Normalized spec.

    Raises:
        SpecLoadError: If the spec cannot be loaded or fails validation.
    """
    if not spec_path.exists():
        raise SpecLoadError(f"Spec file not found: {spec_path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = spec_path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat spec file {spec_path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Spec file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {spec_path}"
        )

    try:
        content = spec_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read spec file {spec_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Spec file must contain a YAML mapping: {spec_path}")

    # Support both flat format and Kubernetes-style wrapper
    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {spec_path}")
    else:
        spec_data = raw_data

    spec = normalize_spec(spec_data, spec_path.resolve().parent)
    logger.info(
        "Loaded web app spec '%s' from %s",
        spec.app_name,
        spec_path,
        extra={"artifacts": len(spec.artifacts), "resources": len(spec.resources)},
    )
    return spec
