"""
Error kinds raised by the StakeFlow core.

Every operation either completes or raises one of these with all state
left unchanged.  Each class also derives from the closest built-in
exception, so callers that catch ``ValueError`` / ``LookupError`` /
``PermissionError`` keep working.
"""

from __future__ import annotations


class StakingError(Exception):
    """Base class for all staking failures."""

    code: str = "StakingError"

    def to_dict(self) -> dict:
        return {"error": self.code, "message": str(self)}


class InvalidAmount(StakingError, ValueError):
    code = "InvalidAmount"


class InvalidRate(StakingError, ValueError):
    code = "InvalidRate"


class InsufficientBalance(StakingError):
    code = "InsufficientBalance"


class StakeNotFound(StakingError, LookupError):
    code = "StakeNotFound"


class AlreadyClaimed(StakingError):
    code = "AlreadyClaimed"


class Unauthorized(StakingError, PermissionError):
    code = "Unauthorized"


class IndexOutOfRange(StakingError, IndexError):
    code = "IndexOutOfRange"


class InvariantViolation(StakingError):
    code = "InvariantViolation"


class InvalidAccount(StakingError, ValueError):
    code = "InvalidAccount"
