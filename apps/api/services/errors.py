"""Typed generation failures and result conditions surfaced to callers."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class FailureKind(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    TIER_LIMIT_EXCEEDED = "tier_limit_exceeded"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    GENERATOR_UNAVAILABLE = "generator_unavailable"
    MALFORMED_GENERATOR_OUTPUT = "malformed_generator_output"


class ConditionKind(str, Enum):
    """Non-fatal conditions attached to a delivered result."""

    LEDGER_UNRECONCILED = "ledger_unreconciled"
    PERSISTENCE_DEGRADED = "persistence_degraded"


HTTP_STATUS_BY_KIND = {
    FailureKind.UNAUTHENTICATED: 401,
    FailureKind.TIER_LIMIT_EXCEEDED: 403,
    FailureKind.INSUFFICIENT_CREDITS: 402,
    FailureKind.GENERATOR_UNAVAILABLE: 502,
    FailureKind.MALFORMED_GENERATOR_OUTPUT: 502,
}

RETRYABLE_KINDS = {
    FailureKind.GENERATOR_UNAVAILABLE,
    FailureKind.MALFORMED_GENERATOR_OUTPUT,
}


class GenerationFailure(Exception):
    """A generation request that ended without a deliverable artifact."""

    def __init__(self, kind: FailureKind, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.detail = detail or {}

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    @property
    def status_code(self) -> int:
        return HTTP_STATUS_BY_KIND.get(self.kind, 500)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            **self.detail,
        }


class GeneratorError(Exception):
    """External generator call failed, timed out or returned nothing."""


class MalformedOutputError(Exception):
    """Generator output could not be parsed or repaired into the target shape."""


class VersionConflictError(Exception):
    """A version number was reused or did not increase within a session."""
