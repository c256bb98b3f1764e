"""
Error taxonomy for provider outreach.

Validation and strict-mode backend failures propagate to the caller.
Everything else is caught where it happens and degrades into data:
a placement error becomes an "error" CallResult, an enrichment failure
leaves the provider un-enriched, an oracle failure triggers the
heuristic ranking.

No-answer, voicemail and timeout are call outcomes, not errors, and have
no exception type.
"""


class ConciergeError(Exception):
    """Base class for all domain errors."""


class CallRequestValidationError(ConciergeError):
    """A call request (or batch) has the wrong shape and was rejected before dispatch."""


class BackendUnavailable(ConciergeError):
    """The selected execution backend cannot be used.

    Raised by the router when strict mode is on and the orchestrator fails its
    health probe, and by the dispatcher when asked to use a backend that was
    never configured.
    """


class CallPlacementError(ConciergeError):
    """The call-automation vendor rejected the call request itself."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class EnrichmentDegradation(ConciergeError):
    """Supplementary data could not be fetched for one provider."""


class ScoringOracleFailure(ConciergeError):
    """The reasoning oracle failed or returned output we could not use."""


class NotificationError(ConciergeError):
    """A text message could not be delivered. Never decides a batch outcome."""
