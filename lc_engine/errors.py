"""
Error Taxonomy
===============
Typed failures raised by the LC workflow engines.

Every error carries a stable ``code`` (for the upward result objects), a
``retryable`` flag, and a ``details`` dict with the diagnostic context.

  ValidationError            caller's fault, nothing happened
  UnauthorizedError          actor lacks the role or pairing
  NotFoundError              unknown invitation / LC / dispute / trade
  AlreadyRespondedError      invitation already answered
  AlreadyFundedError         escrow already funded under another key
  ExpiredError               invitation past its expiry
  IllegalTransitionError     state machine violation
  ConflictError              lost a race; re-read and retry
  ImbalancedResolutionError  dispute split does not conserve escrow
  LedgerPendingError         outcome unknown; reconcile, never retry
  LedgerFailedError          ledger refused; safe to retry same key
  WindowMismatchError        archive window outside trade lifetime
"""

from __future__ import annotations

from typing import Any


class LCEngineError(Exception):
    """Base class for all workflow errors."""

    code = "LC_ENGINE_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details: dict[str, Any] = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "type": type(self).__name__,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class ValidationError(LCEngineError, ValueError):
    code = "VALIDATION_ERROR"


class UnauthorizedError(LCEngineError):
    code = "PERMISSION_DENIED"


class NotFoundError(LCEngineError, LookupError):
    code = "NOT_FOUND"


class AlreadyRespondedError(LCEngineError):
    code = "ALREADY_RESPONDED"


class AlreadyFundedError(LCEngineError):
    code = "ALREADY_FUNDED"


class ExpiredError(LCEngineError):
    code = "INVITATION_EXPIRED"


class IllegalTransitionError(LCEngineError):
    code = "ILLEGAL_TRANSITION"

    def __init__(self, current: str, target: str, reason: str = "", **kwargs: Any) -> None:
        self.current = current
        self.target = target
        message = f"Cannot transition from {current} to {target}"
        if reason:
            message += f": {reason}"
        details = kwargs.pop("details", None) or {}
        details.update({"current": current, "target": target})
        super().__init__(message, details=details, **kwargs)


class ConflictError(LCEngineError):
    code = "CONFLICT"
    retryable = True


class ImbalancedResolutionError(LCEngineError):
    code = "IMBALANCED_RESOLUTION"


class LedgerPendingError(LCEngineError):
    """The ledger accepted or may have accepted the transfer; outcome unknown."""

    code = "LEDGER_PENDING"

    def __init__(self, message: str, *, idempotency_key: str, tx_ref: str | None = None,
                 **kwargs: Any) -> None:
        self.idempotency_key = idempotency_key
        self.tx_ref = tx_ref
        details = kwargs.pop("details", None) or {}
        details.update({"idempotency_key": idempotency_key, "tx_ref": tx_ref})
        super().__init__(message, details=details, **kwargs)


class LedgerFailedError(LCEngineError):
    code = "LEDGER_FAILED"
    retryable = True

    def __init__(self, message: str, *, idempotency_key: str | None = None,
                 **kwargs: Any) -> None:
        self.idempotency_key = idempotency_key
        details = kwargs.pop("details", None) or {}
        details["idempotency_key"] = idempotency_key
        super().__init__(message, details=details, **kwargs)


class WindowMismatchError(LCEngineError):
    code = "WINDOW_MISMATCH"
