"""
Typed failures raised by the linking core.

Registry and link-state errors propagate to the immediate caller; only
``AggregatedFileListingService`` turns per-provider failures into an
``errors`` entry instead of raising.
"""

from __future__ import annotations

from typing import Optional


class ConnectorError(Exception):
    """Base class for every linking-core failure."""

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.user_id = user_id

    @property
    def reason(self) -> str:
        return str(self)


class ProviderNotRegistered(ConnectorError):
    """The provider identifier is not in the ProviderRegistry."""

    def __init__(self, provider: object) -> None:
        name = getattr(provider, "value", provider)
        super().__init__(f"Provider '{name}' is not registered", provider=str(name))


class LinkNotFound(ConnectorError):
    def __init__(self, user_id: str, provider: object) -> None:
        name = getattr(provider, "value", provider)
        super().__init__(
            f"User {user_id} is not linked to {name}",
            provider=str(name),
            user_id=user_id,
        )


class LinkRevoked(ConnectorError):
    """The link is a tombstone; only a new link flow can replace it."""

    def __init__(self, user_id: str, provider: object) -> None:
        name = getattr(provider, "value", provider)
        super().__init__(
            f"Link between user {user_id} and {name} was revoked; re-link required",
            provider=str(name),
            user_id=user_id,
        )


class TokenRefreshFailed(ConnectorError):
    pass


class ProviderListingFailed(ConnectorError):
    pass


class GrantValidationError(ConnectorError):
    """Grant material handed to ``establish_link`` is unusable."""


class ConcurrentLinkModification(ConnectorError):
    """A compare-and-swap write lost to a concurrent writer."""


class InvalidPageToken(ConnectorError):
    """A paging token that the provider did not issue."""
