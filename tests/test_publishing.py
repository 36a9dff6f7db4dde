"""Tests for the Kudu and FTP transfer channels."""

import ftplib
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests
from azure.core.exceptions import AzureError, HttpResponseError

from azure_mock import FTP_PROFILE_XML
from webapp_deployer.appservice import DeployTarget, PublishingCredentials
from webapp_deployer.models import ArtifactDescriptor, DeployType, ResourceSpec
from webapp_deployer.publishing import (
    FtpProfile,
    FtpUploader,
    KuduPublisher,
    PublishingError,
    onedeploy_path,
    parse_ftp_profile,
)

TARGET = DeployTarget(
    resource_group="rg1",
    app_name="demo-app",
    slot_name="staging",
    default_host_name="demo-app-staging.azurewebsites.net",
    runtime=None,
)
CREDENTIALS = PublishingCredentials(username="$demo-app__staging", password="publish-secret")


def make_publisher(status_code: int = 200) -> tuple[KuduPublisher, MagicMock]:
    session = MagicMock()
    session.post.return_value = MagicMock(status_code=status_code, text="body")
    return KuduPublisher(TARGET, CREDENTIALS, timeout=300, session=session), session


class TestOnedeployPath:
    def test_war_at_root(self) -> None:
        artifact = ArtifactDescriptor(file=Path("app.war"), deploy_type=DeployType.WAR)

        assert onedeploy_path(artifact) is None

    def test_war_at_context_path(self) -> None:
        artifact = ArtifactDescriptor(
            file=Path("app.war"), deploy_type=DeployType.WAR, path="/shop"
        )

        assert onedeploy_path(artifact) == "shop"

    def test_static_file_includes_name(self) -> None:
        artifact = ArtifactDescriptor(
            file=Path("build/index.html"), deploy_type=DeployType.STATIC, path="static/"
        )

        assert onedeploy_path(artifact) == "static/index.html"

    def test_static_file_at_root(self) -> None:
        artifact = ArtifactDescriptor(file=Path("robots.txt"), deploy_type=DeployType.STATIC)

        assert onedeploy_path(artifact) == "robots.txt"


class TestKuduPublisher:
    def test_scm_host_of_slot(self) -> None:
        publisher, _ = make_publisher()

        assert publisher.base_url == "https://demo-app-staging.scm.azurewebsites.net/api"

    def test_publish(self, tmp_path: Path) -> None:
        war = tmp_path / "app.war"
        war.write_bytes(b"war")
        publisher, session = make_publisher()

        publisher.publish(ArtifactDescriptor(file=war, deploy_type=DeployType.WAR, path="shop"))

        args, kwargs = session.post.call_args
        assert args[0] == "https://demo-app-staging.scm.azurewebsites.net/api/publish"
        assert kwargs["params"] == {"type": "war", "path": "shop"}
        assert kwargs["auth"] == ("$demo-app__staging", "publish-secret")
        assert kwargs["timeout"] == 300

    def test_publish_with_forced_type(self, tmp_path: Path) -> None:
        war = tmp_path / "app.war"
        war.write_bytes(b"war")
        publisher, session = make_publisher()

        publisher.publish(ArtifactDescriptor(file=war, deploy_type=DeployType.WAR), DeployType.EAR)

        assert session.post.call_args.kwargs["params"] == {"type": "ear"}

    def test_zip_deploy(self, tmp_path: Path) -> None:
        archive = tmp_path / "package.zip"
        archive.write_bytes(b"PK")
        publisher, session = make_publisher(status_code=202)

        publisher.zip_deploy(archive)

        args, kwargs = session.post.call_args
        assert args[0].endswith("/api/zipdeploy")
        assert kwargs["headers"] == {"Content-Type": "application/zip"}

    def test_failed_status(self, tmp_path: Path) -> None:
        war = tmp_path / "app.war"
        war.write_bytes(b"war")
        publisher, _ = make_publisher(status_code=409)

        with pytest.raises(HttpResponseError, match="409"):
            publisher.publish(ArtifactDescriptor(file=war, deploy_type=DeployType.WAR))

    def test_connection_error(self, tmp_path: Path) -> None:
        war = tmp_path / "app.war"
        war.write_bytes(b"war")
        publisher, session = make_publisher()
        session.post.side_effect = requests.ConnectionError("connection reset")

        with pytest.raises(HttpResponseError, match="connection reset"):
            publisher.publish(ArtifactDescriptor(file=war, deploy_type=DeployType.WAR))

    def test_password_not_in_repr(self) -> None:
        assert "publish-secret" not in repr(CREDENTIALS)


class TestParseFtpProfile:
    def test_ftp_profile(self) -> None:
        profile = parse_ftp_profile(FTP_PROFILE_XML)

        assert profile.host == "waws-prod-am2-001.ftp.azurewebsites.windows.net"
        assert profile.username == "demo-app\\$demo-app"
        assert profile.password == "ftp-secret"
        assert profile.passive is True
        assert "ftp-secret" not in repr(profile)

    def test_no_ftp_profile(self) -> None:
        xml = '<publishData><publishProfile publishMethod="MSDeploy" /></publishData>'

        with pytest.raises(PublishingError, match="no FTP"):
            parse_ftp_profile(xml)

    def test_invalid_xml(self) -> None:
        with pytest.raises(PublishingError):
            parse_ftp_profile("<publishData>")

    def test_publishing_error_is_azure_error(self) -> None:
        assert issubclass(PublishingError, AzureError)


class TestFtpUploader:
    @pytest.fixture
    def resource(self, tmp_path: Path) -> ResourceSpec:
        tools = tmp_path / "tools"
        (tools / "conf").mkdir(parents=True)
        (tools / "agent.jar").write_bytes(b"jar")
        (tools / "conf" / "agent.properties").write_text("level=info")
        return ResourceSpec(directory=tools, target_path="../tools")

    @staticmethod
    def make_uploader() -> tuple[FtpUploader, MagicMock, MagicMock]:
        ftp = MagicMock()
        factory = MagicMock(return_value=ftp)
        profile = FtpProfile(host="ftp.example.net", username="user", password="pass")
        return FtpUploader(profile, timeout=60, ftp_factory=factory), factory, ftp

    def test_upload(self, resource: ResourceSpec) -> None:
        uploader, factory, ftp = self.make_uploader()

        count = uploader.upload([resource])

        assert count == 2
        factory.assert_called_once_with("ftp.example.net", timeout=60)
        ftp.login.assert_called_once_with("user", "pass")
        ftp.prot_p.assert_called_once()
        stored = [c.args[0] for c in ftp.storbinary.call_args_list]
        assert stored == [
            "STOR /site/tools/agent.jar",
            "STOR /site/tools/conf/agent.properties",
        ]
        made = [c.args[0] for c in ftp.mkd.call_args_list]
        assert made == ["/site", "/site/tools", "/site/tools/conf"]
        ftp.close.assert_called_once()

    def test_existing_directories_tolerated(self, resource: ResourceSpec) -> None:
        uploader, _, ftp = self.make_uploader()
        ftp.mkd.side_effect = ftplib.error_perm("550 Directory already exists")

        assert uploader.upload([resource]) == 2

    def test_ftp_failure(self, resource: ResourceSpec) -> None:
        uploader, _, ftp = self.make_uploader()
        ftp.login.side_effect = ftplib.error_perm("530 Login incorrect")

        with pytest.raises(PublishingError, match="530"):
            uploader.upload([resource])

        ftp.close.assert_called_once()

    def test_nothing_to_upload(self) -> None:
        uploader, factory, _ = self.make_uploader()

        assert uploader.upload([]) == 0
        factory.assert_not_called()
