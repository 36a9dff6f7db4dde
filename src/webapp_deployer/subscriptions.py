"""Subscription selection for an authenticated credential.

Resolution order:
1. Explicitly configured subscription id
2. The credential's cached default subscription (Azure CLI)
3. The credential's subscription filter (VS Code), if exactly one matches
4. The only subscription of the account
5. Interactive selection, sorted by display name

Whatever is chosen is checked against the account's subscription list.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

import click
from azure.mgmt.resource import SubscriptionClient

from .config import ConfigurationError
from .credentials import AzureCredential

logger = logging.getLogger(__name__)


class SubscriptionNotFound(ConfigurationError):
    """Raised when the selected subscription is not in the account."""

    pass


@dataclass(frozen=True)
class SubscriptionInfo:
    subscription_id: str
    display_name: str

    @property
    def sort_key(self) -> tuple[str, str]:
        return (self.display_name.casefold(), self.subscription_id.lower())


PromptFn = Callable[[list[SubscriptionInfo]], SubscriptionInfo | None]


def list_subscriptions(credential: AzureCredential) -> list[SubscriptionInfo]:
    """List the subscriptions visible to the credential."""
    client = SubscriptionClient(
        credential=credential.token_credential,
        base_url=credential.cloud.resource_manager,
        credential_scopes=[credential.cloud.management_scope],
    )
    return [
        SubscriptionInfo(
            subscription_id=subscription.subscription_id,
            display_name=subscription.display_name or subscription.subscription_id,
        )
        for subscription in client.subscriptions.list()
    ]


def prompt_subscription(options: list[SubscriptionInfo]) -> SubscriptionInfo | None:
    """Ask the operator to pick one subscription; the first entry is the default."""
    click.echo("Available subscriptions:")
    for index, option in enumerate(options, start=1):
        click.echo(f"{index:>3}. {option.display_name} ({option.subscription_id})")
    choice = click.prompt(
        "Please choose a subscription",
        type=click.IntRange(1, len(options)),
        default=1,
    )
    return options[choice - 1]


class SubscriptionResolver:
    """Picks exactly one subscription id for the run."""

    def __init__(
        self,
        subscription_id: str | None = None,
        *,
        interactive: bool = False,
        lister: Callable[[AzureCredential], list[SubscriptionInfo]] = list_subscriptions,
        prompt: PromptFn = prompt_subscription,
    ) -> None:
        self._subscription_id = subscription_id
        self._interactive = interactive
        self._lister = lister
        self._prompt = prompt

    def resolve(self, credential: AzureCredential) -> str | None:
        """Resolve the subscription id.

        Returns:
            The subscription id, or None when nothing could be chosen without
            asking and prompting is disabled. Callers that need a subscription
            fail on their own in that case.

        Raises:
            ConfigurationError: If a subscription has to be chosen and the
                account has none, or the interactive selection was aborted.
            SubscriptionNotFound: If the chosen id is not in the account.
        """
        subscriptions = self._lister(credential)
        target = self._subscription_id or credential.default_subscription_id

        if not target and credential.filtered_subscription_ids:
            filters = {s.lower() for s in credential.filtered_subscription_ids}
            matches = [s for s in subscriptions if s.subscription_id.lower() in filters]
            if len(matches) == 1:
                target = matches[0].subscription_id

        if not target:
            target = self._select(subscriptions)

        if not target:
            logger.warning(
                "No subscription selected, operations that need one will fail. "
                "Set AZURE_SUBSCRIPTION_ID or allow interactive selection."
            )
            return None

        selected = next(
            (s for s in subscriptions if s.subscription_id.lower() == target.lower()),
            None,
        )
        if selected is None:
            raise SubscriptionNotFound(
                f"Subscription '{target}' is not found in current account, "
                "please check the subscription id and your permissions."
            )

        logger.info(
            "Subscription: %s(%s)",
            selected.display_name,
            selected.subscription_id,
            extra={"subscription_id": selected.subscription_id},
        )
        return selected.subscription_id

    def _select(self, subscriptions: list[SubscriptionInfo]) -> str | None:
        if not subscriptions:
            raise ConfigurationError("Cannot find any subscriptions in current account.")
        if len(subscriptions) == 1:
            only = subscriptions[0]
            logger.info(
                "There is only one subscription '%s' in your account, will use it automatically.",
                only.display_name,
            )
            return only.subscription_id

        if not self._interactive:
            return None

        options = sorted(subscriptions, key=lambda s: s.sort_key)
        try:
            chosen = self._prompt(options)
        except click.Abort as e:
            raise ConfigurationError("You must select a subscription.") from e
        if chosen is None:
            raise ConfigurationError("You must select a subscription.")
        return chosen.subscription_id
