"""Error taxonomy for ingestion, review and billing.

Each error carries a stable `code` used in API error bodies so callers can
branch on it (e.g. prompt for a top-up on `insufficient_credits` instead of
retrying).
"""
from __future__ import annotations


class CVReconError(Exception):
    """Base for all service errors."""

    code = "error"

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class InputError(CVReconError):
    """Missing or invalid caller input. Raised before any side effect."""

    code = "invalid_input"


class NotFoundError(CVReconError):
    """Record missing or not owned by the caller. Never says which."""

    code = "not_found"


class InsufficientCreditsError(CVReconError):
    """Balance cannot cover the requested work."""

    code = "insufficient_credits"

    def __init__(self, current_balance: float, required: float) -> None:
        super().__init__(
            "Insufficient credits. Please add more credits to continue.",
            details={"current_balance": current_balance, "required": required},
        )
        self.current_balance = current_balance
        self.required = required


class IngestionError(CVReconError):
    """Irrecoverable failure of a whole ingestion run (e.g. store unavailable).

    Writes committed before the failure are kept.
    """

    code = "ingestion_error"
