"""Main entry point for the web app deployer.

One run is strictly sequential:
1. Load and validate the application spec
2. Authenticate through the credential chain
3. Resolve the subscription
4. Reconcile resource group, plan and web app (or slot)
5. Deploy artifacts and external resources
6. Log the public host name

Nothing is retried and nothing is rolled back. Every failure is logged
once and mapped to a non-zero exit code.
"""

from __future__ import annotations

import json
import logging
import sys
import tempfile
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from azure.core.exceptions import AzureError

from .appservice import AppServiceClient, DeployTarget
from .config import Config, ConfigurationError
from .credentials import AzureCredential, CredentialChain, LoginFailure
from .deployer import DeploymentStrategist, PackagingError
from .models import WebAppSpec
from .reconciler import ResourceReconciler
from .spec_loader import SpecLoadError, load_webapp_spec
from .subscriptions import SubscriptionResolver

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_LOGIN_FAILURE = 2

STAGING_DIR_PREFIX = "webapp-deploy-"

_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure structured logging with JSON output on stdout."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())

    if not any(isinstance(h.formatter, JsonFormatter) for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
        root_logger.addHandler(handler)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


class Orchestrator:
    """Runs authenticate, resolve, reconcile and deploy in order.

    Collaborators can be replaced for testing; by default they are built
    from the run configuration.
    """

    def __init__(
        self,
        config: Config,
        *,
        credential_chain: CredentialChain | None = None,
        subscription_resolver: SubscriptionResolver | None = None,
        client_factory: Callable[[AzureCredential, str | None], AppServiceClient] = (
            AppServiceClient
        ),
        spec_loader: Callable[[Path], WebAppSpec] = load_webapp_spec,
    ) -> None:
        self._config = config
        self._credential_chain = credential_chain or CredentialChain(config)
        self._subscription_resolver = subscription_resolver or SubscriptionResolver(
            config.subscription_id, interactive=config.interactive
        )
        self._client_factory = client_factory
        self._spec_loader = spec_loader

    def run(self) -> DeployTarget:
        """Execute one full run and return the deployed target."""
        spec = self._spec_loader(self._config.spec_file)

        credential = self._credential_chain.resolve()
        subscription_id = self._subscription_resolver.resolve(credential)
        client = self._client_factory(credential, subscription_id)

        # Staging exists for the whole run and is removed on every exit path
        with tempfile.TemporaryDirectory(prefix=STAGING_DIR_PREFIX) as staging:
            target = ResourceReconciler(client).reconcile(spec)
            DeploymentStrategist(
                client,
                staging_dir=Path(staging),
                timeout=self._config.http_timeout_seconds,
            ).deploy(target, spec)

        logger.info(
            "Web app %s is available at %s",
            target.display_name,
            target.url,
            extra={"host_name": target.default_host_name},
        )
        return target


def main(config: Config | None = None, orchestrator: Orchestrator | None = None) -> int:
    """Run the deployer.

    Returns:
        Exit code: 0 on success, 2 on login failure, 1 on any other failure.
    """
    if config is None:
        try:
            config = Config.from_env()
        except ConfigurationError as e:
            setup_logging()
            logger.error("Configuration error", extra={"error": str(e)})
            return EXIT_FAILURE

    setup_logging(config.log_level)
    logger.info(
        "Starting web app deployment",
        extra={"spec_file": str(config.spec_file), "cloud": config.cloud.name},
    )

    try:
        (orchestrator or Orchestrator(config)).run()
    except SpecLoadError as e:
        logger.error("Failed to load web app spec", extra={"error": str(e)})
        return EXIT_FAILURE
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_FAILURE
    except LoginFailure as e:
        logger.error("Login failed", extra={"error": str(e)})
        return EXIT_LOGIN_FAILURE
    except PackagingError as e:
        logger.error("Packaging failed", extra={"error": str(e)})
        return EXIT_FAILURE
    except AzureError as e:
        logger.error(
            "Azure error",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return EXIT_FAILURE
    except Exception as e:
        # Unexpected error - log with full traceback for debugging
        logger.exception("Deployment failed unexpectedly", extra={"error": str(e)})
        return EXIT_FAILURE

    return EXIT_SUCCESS


def run() -> None:
    """Entry point for running from the environment only."""
    sys.exit(main())


if __name__ == "__main__":
    run()
