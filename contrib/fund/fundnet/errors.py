"""
Fund Network SDK - Errors

Every failure the settlement pipeline can report, grouped by how the caller
should react to it. Handlers convert these to {"ok": False, ...} payloads only
at the outer surfaces (HTTP, pipeline stage results, daemon loop).
"""

from typing import Any, Dict


class FundError(Exception):
    """Base settlement error."""

    kind = "error"
    http_status = 400
    retriable = False

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        payload = {"ok": False, "error": self.message, "kind": self.kind}
        payload.update(self.details)
        return payload


class ValidationError(FundError):
    """Malformed reference, hash or request body. No state was touched."""
    kind = "validation"
    http_status = 400


class NotFoundError(FundError):
    """Unknown position reference."""
    kind = "not_found"
    http_status = 404


class StateConflict(FundError):
    """
    Wrong precondition status, or a conditional update matched zero rows.

    Someone else already advanced the position. Re-read the position and move on.
    """
    kind = "state_conflict"
    http_status = 409
    retriable = True


class ChainVerificationError(FundError):
    """
    The submitted transaction can never satisfy this position.

    Receipt unsuccessful, no matching transfer, or amount outside bounds.
    Terminal for that transaction: needs operator recovery, not a retry.
    """
    kind = "chain_verification"
    http_status = 422

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["major"] = True
        payload["action"] = "manual_recovery"
        return payload


class InfrastructureError(FundError):
    """Provider, network or storage failure. Safe to retry."""
    kind = "infrastructure"
    http_status = 503
    retriable = True


class ConfigurationError(InfrastructureError):
    """A required setting is missing or invalid."""
    retriable = False


class KeyIntegrityError(FundError):
    """Authentication tag mismatch or malformed decrypted key. Fatal."""
    kind = "key_integrity"
    http_status = 500


class MaintenanceActive(FundError):
    """The maintenance gate is closed."""
    kind = "maintenance"
    http_status = 503

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["paused"] = True
        return payload


class GasTopupExhausted(FundError):
    """Deposit address still short on gas after its single top-up."""
    kind = "gas_exhausted"
    http_status = 409
