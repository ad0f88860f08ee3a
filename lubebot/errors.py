"""Error types raised inside the advisor pipeline.

Only EmptyMessageError is allowed to reach the caller; every other error is
caught by the component that owns the failing upstream and turned into that
component's fallback.
"""


class LubebotError(Exception):
    """Base class for advisor errors."""


class UpstreamUnavailableError(LubebotError):
    """An upstream call (catalog, classifier, generator) failed after retries."""


class CatalogUnavailableError(UpstreamUnavailableError):
    """The product catalog could not be fetched or reported success=false."""


class MalformedUpstreamResultError(LubebotError):
    """The classification service returned a payload that failed the shape check."""


class EmptyMessageError(LubebotError, ValueError):
    """The inbound message is empty or whitespace only."""
