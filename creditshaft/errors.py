"""Engine error taxonomy.

Every error carries a stable ``kind`` string and an HTTP-equivalent status so
the boundary layer can report failures without collapsing distinct causes.
"""
from __future__ import annotations


class EngineError(Exception):
    """Base class for all engine failures."""

    kind = "engine_error"
    http_status = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind


class ValidationError(EngineError):
    """Bad input; never retried."""

    kind = "validation_error"
    http_status = 400


class NotFound(EngineError):
    kind = "not_found"
    http_status = 404


class DuplicateId(EngineError):
    kind = "duplicate_id"
    http_status = 409


class InvalidTransition(EngineError):
    """State machine violation, including double settlement."""

    kind = "invalid_transition"
    http_status = 409


class SettlementInProgress(InvalidTransition):
    """Another settlement of the same loan is already talking to the gateway."""

    kind = "settlement_in_progress"


class NoHoldToCharge(EngineError):
    kind = "no_hold_to_charge"
    http_status = 409


class UpstreamUnavailable(EngineError):
    """Transient payment processor failure; safe to retry, loan unchanged."""

    kind = "upstream_unavailable"
    http_status = 502


class UpstreamRejected(EngineError):
    """Terminal payment processor failure; needs operator attention."""

    kind = "upstream_rejected"
    http_status = 400


class FetchFailure(EngineError):
    """Position read failure. Downgraded by the reconciler, never surfaced."""

    kind = "fetch_failure"
    http_status = 502
