"""Provider adapter interface and registry.

Provider wire protocols (IMAP commands, OAuth token refresh, vendor REST
payloads) live outside this package. An adapter performs one authenticated
fetch of one page of messages for one account and returns them in the
provider-neutral ProviderMessage shape.

Adapters are chosen once per account through the AdapterRegistry, keyed by
ProviderKind, instead of branching on the provider name at every call site.

Usage:
    registry = AdapterRegistry()
    registry.register(ProviderKind.IMAP, imap_adapter)

    adapter = registry.adapter_for(account)
    page = await adapter.fetch_page(account, window, page_cursor=None)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Literal, Protocol

from mailsync.core.errors import ProviderNotConfiguredError

if TYPE_CHECKING:
    from mailsync.db.store import Account

MessageType = Literal["inbox", "sent"]


class ProviderKind(StrEnum):
    """Mail providers an account can be connected to."""

    GOOGLE = "google"
    MICROSOFT = "microsoft"
    IMAP = "imap"


class FetchMode(StrEnum):
    """Whether a sync resumes from the cursor or rescans a bounded window."""

    DELTA = "delta"
    FULL = "full"


@dataclass(frozen=True)
class FetchWindow:
    """The time window an account sync asks the provider for.

    Attributes:
        mode: DELTA (since the cursor) or FULL (bounded lookback)
        since: Lower bound on received time
        page_size: Messages requested per page
        max_messages: Stop paging once this many messages were returned
    """

    mode: FetchMode
    since: datetime
    page_size: int = 50
    max_messages: int = 200


@dataclass
class ProviderMessage:
    """One message as returned by a provider adapter.

    message_id is the provider-issued identifier and must be passed through
    verbatim: it is the durable dedup key across sync runs. None means the
    provider did not supply one.
    """

    message_id: str | None
    folder: str | None = None
    message_type: MessageType = "inbox"
    subject: str | None = None
    sender_email: str | None = None
    received_at: datetime | None = None
    body_text: str | None = None
    body_html: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def has_content(self) -> bool:
        return bool(self.body_text or self.body_html)


@dataclass(frozen=True)
class FetchPage:
    """One page of results; next_page_cursor is None on the last page."""

    messages: list[ProviderMessage]
    next_page_cursor: str | None = None


class ProviderAdapter(Protocol):
    """Fetches pages of messages from one provider.

    Implementations raise AuthError when the account's credentials are
    expired or revoked and TransientProviderError for network, rate-limit
    and server failures. Anything else is treated as a transient failure
    by the orchestrator.
    """

    async def fetch_page(
        self,
        account: Account,
        window: FetchWindow,
        page_cursor: str | None,
    ) -> FetchPage: ...


class AdapterRegistry:
    """Maps each ProviderKind to the adapter that serves it."""

    def __init__(self, adapters: dict[ProviderKind, ProviderAdapter] | None = None):
        self._adapters: dict[ProviderKind, ProviderAdapter] = dict(adapters or {})

    def register(self, kind: ProviderKind | str, adapter: ProviderAdapter) -> None:
        self._adapters[ProviderKind(kind)] = adapter

    @property
    def kinds(self) -> list[ProviderKind]:
        return sorted(self._adapters)

    def adapter_for(self, account: Account) -> ProviderAdapter:
        """Return the adapter for an account's provider.

        Raises:
            ProviderNotConfiguredError: If the provider is unknown or has no adapter
        """
        try:
            kind = ProviderKind(account.provider)
        except ValueError as e:
            raise ProviderNotConfiguredError(
                f"Account {account.id} has unknown provider '{account.provider}'. "
                f"Expected one of: {', '.join(k.value for k in ProviderKind)}"
            ) from e

        adapter = self._adapters.get(kind)
        if adapter is None:
            raise ProviderNotConfiguredError(
                f"No adapter registered for provider '{kind.value}' (account {account.id}). "
                f"Add it under plugins.providers in config.yaml."
            )
        return adapter
