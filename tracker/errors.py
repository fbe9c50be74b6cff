"""Error taxonomy for the chapter update pipeline.

Source errors are raised by adapters, delivery errors by channel
dispatchers. The worker maps each class onto a queue transition.
"""

from __future__ import annotations


class ChapterbellError(Exception):
    """Base class for all pipeline errors."""


class SourceError(ChapterbellError):
    """Base class for errors raised by a source adapter."""


class TransientSourceError(SourceError):
    """Network failure, timeout or rate limit. Retried with backoff."""


# Name used by the adapter contract.
SourceUnavailable = TransientSourceError


class SourceNotFound(SourceError):
    """The external key no longer resolves. Not retried."""


class SourceDataError(SourceError):
    """Malformed or unexpected payload. Skipped until the next scheduled check."""


class PersistenceConflict(ChapterbellError):
    """Another writer already recorded the same (title, chapter number)."""

    def __init__(self, title_id: int, numbers: list[float]):
        super().__init__(f"title {title_id}: chapters already recorded {numbers}")
        self.title_id = title_id
        self.numbers = numbers


class DeliveryError(ChapterbellError):
    """Base class for errors raised by a channel dispatcher."""


class DeliveryTransientError(DeliveryError):
    """Delivery may succeed later. Retried with backoff."""


class DeliveryPermanentError(DeliveryError):
    """Bad or revoked destination. The job is dead-lettered."""


class FatalPipelineError(ChapterbellError):
    """The orchestrator cannot read its inputs at all; the whole run aborts."""
