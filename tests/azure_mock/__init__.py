"""Azure API Mock for testing.

In-memory stand-ins for the App Service facade and for credentials, so the
reconcile and deploy flow can run without Azure connectivity.

Usage:
    from azure_mock import MockAppServiceClient, create_mock_credential

    client = MockAppServiceClient()
    client.add_resource_group("rg1", "eastus")

    target = ResourceReconciler(client).reconcile(spec)

    assert client.count("create_web_app") == 1
"""

from .appservice import FTP_PROFILE_XML, MOCK_SUBSCRIPTION_ID, MockAppServiceClient
from .credential import MockTokenCredential, create_mock_credential

__all__ = [
    "FTP_PROFILE_XML",
    "MOCK_SUBSCRIPTION_ID",
    "MockAppServiceClient",
    "MockTokenCredential",
    "create_mock_credential",
]
