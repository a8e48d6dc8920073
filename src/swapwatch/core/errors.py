"""Exceptions shared by the core and adapters."""

from __future__ import annotations


class SwapwatchError(RuntimeError):
    """Base class for all swapwatch errors."""


class BatchFetchError(SwapwatchError):
    """The item batch could not be fetched; the run is aborted."""


class RuleFetchError(SwapwatchError):
    """The active rule set could not be loaded; the run is aborted."""


class RecordNotFoundError(SwapwatchError):
    """No item record exists for the requested external id."""


class RoutingConfigNotFoundError(SwapwatchError):
    """No routing config exists for the requested scope."""


class SourceError(SwapwatchError):
    """The item source returned an unusable response."""


class TransientSourceError(SourceError):
    """A source failure worth retrying (rate limit, 5xx, network)."""


class ClassificationError(SwapwatchError):
    """The classifier could not produce a summary."""


class DeliveryError(SwapwatchError):
    """A messenger call was rejected."""


class TransientDeliveryError(DeliveryError):
    """A messenger failure worth retrying (rate limit, 5xx, network)."""
