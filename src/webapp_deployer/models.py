"""Pydantic models for the normalized application description.

These models provide:
1. Type-safe representation of what a run should deploy
2. Validation at the boundary (fail fast, fail loudly)
3. Translation of the runtime to and from App Service site configuration
"""

from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

# Web containers with special deployment rules
JBOSS_72 = "jbosseap 7.2"
JAVA_SE = "java se"

# linux_fx_version stacks that carry a Java runtime
_LINUX_JAVA_STACKS = ("JAVA", "TOMCAT", "JBOSSEAP")

# Content root of an App Service site, as seen through FTP and Kudu
SITE_ROOT = "/site/wwwroot"

DEFAULT_PRICING_TIER = "P1v2"


class OperatingSystem(str, Enum):
    """App Service operating systems. DOCKER is a Linux container app."""

    WINDOWS = "windows"
    LINUX = "linux"
    DOCKER = "docker"


class DeployType(str, Enum):
    """Artifact types understood by the Kudu publish API."""

    WAR = "war"
    JAR = "jar"
    EAR = "ear"
    ZIP = "zip"
    STATIC = "static"
    STARTUP = "startup"
    SCRIPT = "script"
    LIB = "lib"

    @classmethod
    def from_file(cls, file: Path) -> DeployType:
        """Infer the deploy type from a file extension."""
        match file.suffix.lower():
            case ".war":
                return cls.WAR
            case ".jar":
                return cls.JAR
            case ".ear":
                return cls.EAR
            case ".zip":
                return cls.ZIP
            case _:
                return cls.STATIC


# =============================================================================
# Pricing tiers
# =============================================================================

_TIER_FAMILIES: tuple[tuple[str, str], ...] = (
    # Order matters: most specific pattern first
    (r"^EP\d+$", "ElasticPremium"),
    (r"^P\d+V3$", "PremiumV3"),
    (r"^P\d+V2$", "PremiumV2"),
    (r"^P\d+$", "Premium"),
    (r"^I\d+V2$", "IsolatedV2"),
    (r"^I\d+$", "Isolated"),
    (r"^S\d+$", "Standard"),
    (r"^B\d+$", "Basic"),
    (r"^D\d+$", "Shared"),
    (r"^F\d+$", "Free"),
)


@dataclass(frozen=True)
class PricingTier:
    """An App Service plan SKU, e.g. PricingTier("Basic", "B1")."""

    tier: str
    size: str

    @classmethod
    def from_string(cls, value: str) -> PricingTier:
        """Parse a size name such as "B1" or "P1v3".

        Raises:
            ValueError: If the size is not a known App Service SKU.
        """
        normalized = value.strip().upper()
        for pattern, family in _TIER_FAMILIES:
            if re.match(pattern, normalized):
                # Azure spells version suffixes in lower case (P1v2)
                size = re.sub(r"V(\d)$", r"v\1", normalized)
                return cls(tier=family, size=size)
        raise ValueError(f"Unknown pricing tier: {value}")

    def matches(self, sku_name: str | None) -> bool:
        return sku_name is not None and sku_name.upper() == self.size.upper()


# =============================================================================
# Runtime
# =============================================================================


def normalize_java_version(value: str) -> str:
    """Reduce "Java 11", "1.8", "jre8", "java11" to "11" / "8"."""
    match = re.search(r"(\d+(?:\.\d+)?)", value)
    if not match:
        raise ValueError(f"Invalid java version: {value}")
    version = match.group(1)
    if version.startswith("1."):
        version = version[2:]
    return version.split(".")[0]


def normalize_web_container(value: str) -> str:
    """Lower-case a container name and collapse whitespace ("Tomcat  9.0" -> "tomcat 9.0")."""
    normalized = " ".join(value.strip().lower().split())
    if normalized in ("java se", "javase", "java", "jar"):
        return JAVA_SE
    return normalized


class Runtime(BaseModel):
    """Runtime descriptor of a web app.

    Docker runtimes carry no java version or container; the image comes
    from the DockerConfiguration.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    os: OperatingSystem
    java_version: str | None = None
    web_container: str | None = None

    @field_validator("java_version")
    @classmethod
    def validate_java_version(cls, v: str | None) -> str | None:
        return normalize_java_version(v) if v else None

    @field_validator("web_container")
    @classmethod
    def validate_web_container(cls, v: str | None) -> str | None:
        return normalize_web_container(v) if v else None

    @model_validator(mode="after")
    def validate_shape(self) -> Runtime:
        if self.os != OperatingSystem.DOCKER and not self.java_version:
            raise ValueError(f"javaVersion is required for {self.os.value} runtime")
        return self

    @property
    def is_docker(self) -> bool:
        return self.os == OperatingSystem.DOCKER

    @property
    def container_name(self) -> str:
        """Container family without version ("tomcat", "jbosseap", "java")."""
        if not self.web_container or self.web_container == JAVA_SE:
            return "java"
        return self.web_container.split(" ")[0]

    @property
    def container_version(self) -> str | None:
        if not self.web_container or self.web_container == JAVA_SE:
            return None
        parts = self.web_container.split(" ", 1)
        return parts[1] if len(parts) > 1 else None

    def linux_fx_version(self, image: str | None = None) -> str:
        """Render the Linux site configuration string for this runtime."""
        if self.is_docker:
            if not image:
                raise ValueError("Docker runtime requires an image")
            return f"DOCKER|{image}"
        java = self.java_version or ""
        # JBoss images have no jre8 flavour
        java_suffix = "jre8" if java == "8" and self.container_name != "jbosseap" else f"java{java}"
        if self.container_name == "java":
            return f"JAVA|{java}-{java_suffix}"
        version = self.container_version or ""
        return f"{self.container_name.upper()}|{version}-{java_suffix}"

    def windows_site_config(self) -> dict[str, Any]:
        """Render the Windows site configuration fields for this runtime."""
        java = self.java_version or ""
        site_config: dict[str, Any] = {"java_version": "1.8" if java == "8" else java}
        if self.container_name == "java":
            site_config["java_container"] = "JAVA"
            site_config["java_container_version"] = "SE"
        else:
            site_config["java_container"] = self.container_name.upper()
            site_config["java_container_version"] = self.container_version or "latest"
        return site_config

    @classmethod
    def from_site_config(cls, site_config: Any) -> Runtime | None:
        """Parse the runtime back from a live site configuration.

        Returns:
            The runtime, or None if the site runs something this tool does
            not manage (e.g. a non-Java stack).
        """
        linux_fx = getattr(site_config, "linux_fx_version", None) or ""
        if linux_fx:
            stack, _, version = linux_fx.partition("|")
            stack = stack.upper()
            if stack in ("DOCKER", "COMPOSE"):
                return cls(os=OperatingSystem.DOCKER)
            if stack not in _LINUX_JAVA_STACKS:
                return None
            container_version, _, java = version.partition("-")
            if not java:
                return None
            if stack == "JAVA":
                return cls(os=OperatingSystem.LINUX, java_version=java, web_container=JAVA_SE)
            return cls(
                os=OperatingSystem.LINUX,
                java_version=java,
                web_container=f"{stack.lower()} {container_version}",
            )

        java_version = getattr(site_config, "java_version", None)
        if not java_version or not re.search(r"\d", java_version):
            return None
        java_container = (getattr(site_config, "java_container", None) or "").upper()
        container_version = getattr(site_config, "java_container_version", None) or ""
        if java_container in ("", "JAVA"):
            web_container = JAVA_SE
        else:
            web_container = f"{java_container.lower()} {container_version}".strip()
        return cls(
            os=OperatingSystem.WINDOWS, java_version=java_version, web_container=web_container
        )


class DockerConfiguration(BaseModel):
    """Container image and optional private registry credentials."""

    model_config = {"frozen": True, "extra": "forbid"}

    image: Annotated[str, Field(min_length=1)]
    registry_url: str | None = None
    username: str | None = None
    password: str | None = Field(default=None, repr=False)

    def app_settings(self) -> dict[str, str]:
        """App settings App Service reads registry credentials from."""
        settings: dict[str, str] = {}
        if self.registry_url:
            settings["DOCKER_REGISTRY_SERVER_URL"] = self.registry_url
        if self.username:
            settings["DOCKER_REGISTRY_SERVER_USERNAME"] = self.username
        if self.password:
            settings["DOCKER_REGISTRY_SERVER_PASSWORD"] = self.password
        return settings


# =============================================================================
# Artifacts and resources
# =============================================================================


class ArtifactDescriptor(BaseModel):
    """One build artifact and where it goes inside the app."""

    model_config = {"frozen": True}

    file: Path
    deploy_type: DeployType
    path: str | None = None


class ResourceSpec(BaseModel):
    """A directory of files to publish, filtered by glob patterns."""

    model_config = {"frozen": True, "extra": "ignore", "populate_by_name": True}

    directory: Path
    target_path: str | None = Field(None, alias="targetPath")
    includes: list[str] = Field(default_factory=lambda: ["**/*"])
    excludes: list[str] = Field(default_factory=list)

    @property
    def absolute_target_path(self) -> str:
        """Target directory resolved against the site content root.

        A leading slash still means the content root; ``..`` escapes it.
        """
        target = (self.target_path or "").replace("\\", "/").lstrip("/")
        return posixpath.normpath(posixpath.join(SITE_ROOT, target))

    @property
    def is_external(self) -> bool:
        """True when the files land outside the site content root."""
        target = self.absolute_target_path
        return not (target == SITE_ROOT or target.startswith(SITE_ROOT + "/"))

    def list_files(self) -> list[Path]:
        """Files under ``directory`` matching includes and not excludes, sorted."""
        if not self.directory.is_dir():
            return []
        matched: set[Path] = set()
        for pattern in self.includes:
            matched.update(p for p in self.directory.glob(pattern) if p.is_file())
        for pattern in self.excludes:
            matched.difference_update(self.directory.glob(pattern))
        return sorted(matched)


class DeploymentSlotSpec(BaseModel):
    """Deployment slot settings."""

    model_config = {"frozen": True, "extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=59)]
    # "parent" clones the production app, any other value names a slot
    configuration_source: str | None = Field(None, alias="configurationSource")


# =============================================================================
# Normalized application description
# =============================================================================


class WebAppSpec(BaseModel):
    """Normalized description of the web app to reconcile and deploy.

    Built once per run by spec_loader.load_webapp_spec() and treated as
    read-only afterwards.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    resource_group: Annotated[str, Field(min_length=1, max_length=90)]
    app_name: Annotated[str, Field(min_length=2, max_length=60)]
    region: str | None = None
    pricing_tier: str | None = None
    app_service_plan_name: str | None = None
    app_service_plan_resource_group: str | None = None
    runtime: Runtime | None = None
    docker: DockerConfiguration | None = None
    app_settings: dict[str, str] = Field(default_factory=dict)
    deployment_slot: DeploymentSlotSpec | None = None
    artifacts: list[ArtifactDescriptor] = Field(default_factory=list)
    resources: list[ResourceSpec] = Field(default_factory=list)
    stop_app_during_deployment: bool = False
    final_name: str | None = None

    @field_validator("app_name")
    @classmethod
    def validate_app_name(cls, v: str) -> str:
        if not re.match(r"^[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9]$", v):
            raise ValueError("appName may only contain letters, digits and hyphens")
        return v

    @field_validator("pricing_tier")
    @classmethod
    def validate_pricing_tier(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return PricingTier.from_string(v).size

    @model_validator(mode="after")
    def validate_docker(self) -> WebAppSpec:
        if self.runtime is not None and self.runtime.is_docker and self.docker is None:
            raise ValueError("docker runtime requires an image")
        return self

    @property
    def deployment_slot_name(self) -> str | None:
        return self.deployment_slot.name if self.deployment_slot else None

    @property
    def plan_name(self) -> str:
        """Configured plan name, or the asp-<app> default."""
        return self.app_service_plan_name or f"asp-{self.app_name}"

    @property
    def plan_resource_group(self) -> str:
        return self.app_service_plan_resource_group or self.resource_group

    @property
    def external_resources(self) -> list[ResourceSpec]:
        return [resource for resource in self.resources if resource.is_external]
