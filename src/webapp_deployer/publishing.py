"""Artifact transfer to a reconciled web app.

Two channels:
- Kudu (the site's SCM endpoint) for build artifacts, using OneDeploy for
  single files and zipdeploy for packaged archives.
- FTPS for external resources that land outside the site content root.

Both authenticate with the site's publishing credentials. Transfer
failures surface as azure-core exceptions so every remote failure shares
one class tree.

SECURITY: Publishing passwords are never logged. FTP connections are
always upgraded to TLS before login.
"""

from __future__ import annotations

import ftplib
import logging
import posixpath
import xml.etree.ElementTree as ET
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

import requests
from azure.core.exceptions import AzureError, HttpResponseError

from .appservice import DeployTarget, PublishingCredentials
from .models import ArtifactDescriptor, DeployType, ResourceSpec

logger = logging.getLogger(__name__)

# Kudu answers 202 for accepted asynchronous deployments
_SUCCESS_CODES = (200, 202)


class PublishingError(AzureError):
    """Raised when the FTP channel fails or cannot be configured."""

    pass


# =============================================================================
# Kudu
# =============================================================================


def onedeploy_path(artifact: ArtifactDescriptor) -> str | None:
    """Target path parameter for the OneDeploy API.

    Static files are addressed by their full path below the content root,
    everything else by the configured directory only.
    """
    directory = (artifact.path or "").strip("/")
    if artifact.deploy_type == DeployType.STATIC:
        return posixpath.join(directory, artifact.file.name) if directory else artifact.file.name
    return directory or None


class KuduPublisher:
    """Pushes artifacts to the SCM endpoint of one web app or slot."""

    def __init__(
        self,
        target: DeployTarget,
        credentials: PublishingCredentials,
        *,
        timeout: int,
        session: requests.Session | None = None,
    ) -> None:
        self._target = target
        self._auth = (credentials.username, credentials.password)
        self._timeout = timeout
        self._session = session or requests.Session()

    @property
    def base_url(self) -> str:
        return f"https://{self._target.scm_host_name}/api"

    def publish(self, artifact: ArtifactDescriptor, deploy_type: DeployType | None = None) -> None:
        """Deploy one file through OneDeploy.

        Args:
            artifact: The file and its target path.
            deploy_type: Overrides the artifact's own type when given.
        """
        effective = deploy_type or artifact.deploy_type
        params = {"type": effective.value}
        path = onedeploy_path(artifact)
        if path:
            params["path"] = path

        logger.info(
            "Deploying %s to %s",
            artifact.file.name,
            self._target.display_name,
            extra={"type": effective.value, "path": path},
        )
        self._post(f"{self.base_url}/publish", artifact.file, "application/octet-stream", params)

    def zip_deploy(self, archive: Path) -> None:
        """Replace the content root with the contents of an archive."""
        logger.info(
            "Deploying archive %s to %s",
            archive.name,
            self._target.display_name,
            extra={"size_bytes": archive.stat().st_size},
        )
        self._post(f"{self.base_url}/zipdeploy", archive, "application/zip", None)

    def _post(
        self, url: str, file: Path, content_type: str, params: dict[str, str] | None
    ) -> None:
        try:
            with file.open("rb") as body:
                response = self._session.post(
                    url,
                    params=params,
                    data=body,
                    auth=self._auth,
                    headers={"Content-Type": content_type},
                    timeout=self._timeout,
                )
        except requests.RequestException as e:
            raise HttpResponseError(f"Kudu deployment failed: {e}") from e

        if response.status_code not in _SUCCESS_CODES:
            raise HttpResponseError(
                f"Kudu deployment failed: {response.status_code} - {response.text}"
            )


# =============================================================================
# FTP
# =============================================================================


@dataclass(frozen=True)
class FtpProfile:
    """FTP endpoint from a publishing profile."""

    host: str
    username: str
    password: str
    passive: bool = True

    def __repr__(self) -> str:
        return f"FtpProfile(host={self.host!r}, username={self.username!r})"


def parse_ftp_profile(profile_xml: str) -> FtpProfile:
    """Extract the FTP endpoint from publishing profile XML.

    Raises:
        PublishingError: If the XML carries no FTP profile.
    """
    try:
        root = ET.fromstring(profile_xml)
    except ET.ParseError as e:
        raise PublishingError(f"Invalid publishing profile: {e}") from e

    for profile in root.iter("publishProfile"):
        if profile.get("publishMethod", "").upper() != "FTP":
            continue
        url = profile.get("publishUrl", "")
        host = urlparse(url).hostname if "://" in url else url.split("/")[0]
        if not host:
            raise PublishingError(f"Publishing profile has an invalid FTP url: {url}")
        return FtpProfile(
            host=host,
            username=profile.get("userName", ""),
            password=profile.get("userPWD", ""),
            passive=profile.get("ftpPassiveMode", "True").lower() == "true",
        )
    raise PublishingError("Publishing profile contains no FTP endpoint")


class FtpUploader:
    """Uploads resource directories over FTPS."""

    def __init__(
        self,
        profile: FtpProfile,
        *,
        timeout: int,
        ftp_factory: Callable[..., ftplib.FTP_TLS] = ftplib.FTP_TLS,
    ) -> None:
        self._profile = profile
        self._timeout = timeout
        self._ftp_factory = ftp_factory

    def upload(self, resources: list[ResourceSpec]) -> int:
        """Upload every file of the given resources.

        Returns:
            Number of files uploaded.

        Raises:
            PublishingError: On any FTP or local file error.
        """
        if not resources:
            return 0

        uploaded = 0
        try:
            ftp = self._ftp_factory(self._profile.host, timeout=self._timeout)
            try:
                ftp.login(self._profile.username, self._profile.password)
                ftp.prot_p()
                ftp.set_pasv(self._profile.passive)
                for resource in resources:
                    uploaded += self._upload_resource(ftp, resource)
            finally:
                ftp.close()
        except (ftplib.Error, OSError) as e:
            raise PublishingError(f"FTP upload to {self._profile.host} failed: {e}") from e
        return uploaded

    def _upload_resource(self, ftp: ftplib.FTP_TLS, resource: ResourceSpec) -> int:
        files = resource.list_files()
        logger.info(
            "Uploading %d file(s) from %s to %s",
            len(files),
            resource.directory,
            resource.absolute_target_path,
        )
        created: set[str] = set()
        for file in files:
            relative = file.relative_to(resource.directory).as_posix()
            remote = posixpath.join(resource.absolute_target_path, relative)
            self._ensure_directory(ftp, posixpath.dirname(remote), created)
            with file.open("rb") as body:
                ftp.storbinary(f"STOR {remote}", body)
        return len(files)

    @staticmethod
    def _ensure_directory(ftp: ftplib.FTP_TLS, directory: str, created: set[str]) -> None:
        """Create every missing component of an absolute remote directory."""
        current = ""
        for part in [p for p in directory.split("/") if p]:
            current = f"{current}/{part}"
            if current in created:
                continue
            try:
                ftp.mkd(current)
            except ftplib.error_perm as e:
                # 550: already exists
                if not str(e).startswith("550"):
                    raise
            created.add(current)
