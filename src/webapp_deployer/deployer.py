"""Artifact deployment to a reconciled web app.

The strategy is chosen from the shape of the artifact list:
- nothing to deploy: no-op
- one artifact: direct OneDeploy (forced to EAR on JBoss EAP 7.2)
- several WARs at distinct paths: direct OneDeploy per artifact
- anything else: stage, package into one archive, zipdeploy

External resources follow over FTP. When configured, the app is stopped
for the duration of the deployment. A start call is issued on every exit
path, whether or not the app was stopped.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

from .appservice import AppServiceClient, DeployTarget
from .models import JAVA_SE, JBOSS_72, ArtifactDescriptor, DeployType, Runtime, WebAppSpec
from .publishing import FtpUploader, KuduPublisher, parse_ftp_profile

logger = logging.getLogger(__name__)

# Java SE apps are started from this file name
JAVA_SE_ARTIFACT_NAME = "app.jar"


class PackagingError(Exception):
    """Raised when artifacts cannot be staged or archived."""

    pass


Artifacts = list[ArtifactDescriptor]
StrategyAction = Callable[[DeployTarget, WebAppSpec, Runtime | None], None]


def _is_war_set_with_distinct_paths(artifacts: Artifacts) -> bool:
    if len(artifacts) < 2 or any(a.deploy_type != DeployType.WAR for a in artifacts):
        return False
    paths = [(a.path or "").strip("/") for a in artifacts]
    return len(set(paths)) == len(paths)


class DeploymentStrategist:
    """Deploys a spec's artifacts and external resources to one target."""

    def __init__(
        self,
        client: AppServiceClient,
        *,
        staging_dir: Path,
        timeout: int,
        kudu_factory: Callable[..., KuduPublisher] = KuduPublisher,
        ftp_factory: Callable[..., FtpUploader] = FtpUploader,
    ) -> None:
        self._client = client
        self._staging_dir = staging_dir
        self._timeout = timeout
        self._kudu_factory = kudu_factory
        self._ftp_factory = ftp_factory
        # Ordered (predicate, action) pairs; the first match wins
        self._strategies: tuple[tuple[Callable[[Artifacts], bool], StrategyAction], ...] = (
            (lambda artifacts: not artifacts, self._deploy_nothing),
            (lambda artifacts: len(artifacts) == 1, self._deploy_single),
            (_is_war_set_with_distinct_paths, self._deploy_each),
            (lambda artifacts: True, self._deploy_packaged),
        )

    def deploy(self, target: DeployTarget, spec: WebAppSpec) -> None:
        """Deploy artifacts, then external resources.

        Raises:
            PackagingError: If staging or archiving fails.
            azure.core.exceptions.AzureError: On any remote failure. The app
                is restarted first if it was stopped for the deployment.
        """
        runtime = target.runtime or spec.runtime
        if runtime is not None and runtime.is_docker:
            logger.info(
                "Skip deployment for docker app %s, the image is set by configuration",
                target.display_name,
            )
            return

        logger.info("Trying to deploy artifacts to %s...", target.display_name)
        with self._stopped_during_deployment(target, spec.stop_app_during_deployment):
            for matches, action in self._strategies:
                if matches(spec.artifacts):
                    action(target, spec, runtime)
                    break
            self._deploy_external_resources(target, spec)
        logger.info("Successfully deployed the artifacts to %s", target.url)

    @contextmanager
    def _stopped_during_deployment(self, target: DeployTarget, stop: bool) -> Iterator[None]:
        """Optionally stop the app, and always start it again on exit."""
        try:
            if stop:
                self._client.stop(target)
            yield
        finally:
            self._client.start(target)

    def _publisher(self, target: DeployTarget) -> KuduPublisher:
        credentials = self._client.get_publishing_credentials(target)
        return self._kudu_factory(target, credentials, timeout=self._timeout)

    # =========================================================================
    # Strategies
    # =========================================================================

    def _deploy_nothing(
        self, target: DeployTarget, spec: WebAppSpec, runtime: Runtime | None
    ) -> None:
        logger.info("No artifacts to deploy to %s", target.display_name)

    def _deploy_single(
        self, target: DeployTarget, spec: WebAppSpec, runtime: Runtime | None
    ) -> None:
        artifact = spec.artifacts[0]
        forced = None
        if runtime is not None and runtime.web_container == JBOSS_72:
            forced = DeployType.EAR
        self._publisher(target).publish(artifact, forced)

    def _deploy_each(
        self, target: DeployTarget, spec: WebAppSpec, runtime: Runtime | None
    ) -> None:
        publisher = self._publisher(target)
        for artifact in spec.artifacts:
            publisher.publish(artifact)

    def _deploy_packaged(
        self, target: DeployTarget, spec: WebAppSpec, runtime: Runtime | None
    ) -> None:
        stage = self._stage(spec.artifacts)
        if runtime is not None and runtime.web_container == JAVA_SE:
            rename_java_se_artifact(stage, spec.final_name)
        archive = self._archive(stage)
        self._publisher(target).zip_deploy(archive)

    # =========================================================================
    # Packaging
    # =========================================================================

    def _stage(self, artifacts: Artifacts) -> Path:
        """Copy artifacts into a fresh directory that mirrors their target paths."""
        stage = self._staging_dir / "artifacts"
        try:
            if stage.exists():
                shutil.rmtree(stage)
            stage.mkdir(parents=True)
            for artifact in artifacts:
                directory = stage / (artifact.path or "").strip("/")
                directory.mkdir(parents=True, exist_ok=True)
                shutil.copy2(artifact.file, directory / artifact.file.name)
        except OSError as e:
            raise PackagingError(f"Failed to stage artifacts in {stage}: {e}") from e
        logger.debug("Staged %d artifact(s) in %s", len(artifacts), stage)
        return stage

    def _archive(self, stage: Path) -> Path:
        base_name = self._staging_dir / "package"
        try:
            return Path(shutil.make_archive(str(base_name), "zip", root_dir=stage))
        except OSError as e:
            raise PackagingError(f"Failed to archive {stage}: {e}") from e

    # =========================================================================
    # External resources
    # =========================================================================

    def _deploy_external_resources(self, target: DeployTarget, spec: WebAppSpec) -> None:
        resources = spec.external_resources
        if not resources:
            return
        logger.info(
            "Uploading %d external resource(s) to %s", len(resources), target.display_name
        )
        profile = parse_ftp_profile(self._client.get_publishing_profile_xml(target))
        uploaded = self._ftp_factory(profile, timeout=self._timeout).upload(resources)
        logger.info("Uploaded %d external file(s)", uploaded)


def rename_java_se_artifact(stage: Path, final_name: str | None) -> Path:
    """Rename the staged jar to the name Java SE apps are started from.

    The only jar in the staging root is renamed. With several jars the one
    named after the build's final name is picked.

    Raises:
        PackagingError: If no jar, or several jars and none matching, exist.
    """
    target = stage / JAVA_SE_ARTIFACT_NAME
    jars = sorted(p for p in stage.glob("*.jar") if p.is_file())
    if target in jars:
        return target
    if len(jars) == 1:
        chosen = jars[0]
    else:
        named = stage / f"{final_name}.jar" if final_name else None
        if named is None or named not in jars:
            raise PackagingError(
                f"Cannot determine the jar to start: found {len(jars)} jar(s) in the "
                f"staging directory and none named '{final_name}.jar'"
            )
        chosen = named
    try:
        chosen.rename(target)
    except OSError as e:
        raise PackagingError(f"Failed to rename {chosen.name} to {target.name}: {e}") from e
    logger.info("Renamed %s to %s", chosen.name, JAVA_SE_ARTIFACT_NAME)
    return target
