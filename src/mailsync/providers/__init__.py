"""Provider adapter interface.

Concrete adapters (IMAP, Gmail API, Microsoft Graph) are supplied as
plugins and registered per ProviderKind.
"""

from mailsync.providers.base import (
    AdapterRegistry,
    FetchMode,
    FetchPage,
    FetchWindow,
    ProviderAdapter,
    ProviderKind,
    ProviderMessage,
)

__all__ = [
    "AdapterRegistry",
    "FetchMode",
    "FetchPage",
    "FetchWindow",
    "ProviderAdapter",
    "ProviderKind",
    "ProviderMessage",
]
