from __future__ import annotations


class GateError(Exception):
    pass


class TransientLedgerError(GateError):
    """RPC transport failure or JSON-RPC error payload; safe to retry."""


class VerificationTimedOut(GateError):
    pass


class ConstraintViolation(GateError):
    pass


class ChallengeCollision(ConstraintViolation):
    """Another pending claim already uses this (destination, mint, amount)."""


class AlreadyOpen(GateError):
    def __init__(self, session_key: int) -> None:
        super().__init__(f"Session {session_key} already has a verification in flight")
        self.session_key = session_key


class RefundFailed(GateError):
    pass


class InviteIssuanceFailed(GateError):
    pass


class EligibilityLookupError(GateError):
    pass


class InvalidSignatureFormat(GateError):
    pass


class DuplicateRefund(GateError):
    """The payment was already claimed for a refund."""
