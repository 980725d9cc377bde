"""Two-factor error taxonomy.

Precondition errors and gate outcomes are raised. A wrong code on disable or
backup code regeneration is a plain False/None return and never appears here.
"""

from typing import Any, Dict, Optional


class TwoFactorError(Exception):
    """Base exception carrying a machine-readable error code."""

    error: str = "error-two-factor"

    def __init__(self, reason: Optional[str] = None, **details: Any):
        self.reason = reason or self.error
        self.details: Dict[str, Any] = details
        super().__init__(self.reason)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error, "reason": self.reason, **self.details}


# Preconditions (caller errors)


class NotAuthorizedError(TwoFactorError):
    """No authenticated user on the call."""

    error = "not-authorized"


class InvalidUserError(TwoFactorError):
    """Authenticated user id does not resolve to an account."""

    error = "error-invalid-user"

    def __init__(self, reason: Optional[str] = "Invalid user", **details: Any):
        super().__init__(reason, **details)


class InvalidTotpError(TwoFactorError):
    """TOTP state does not allow the operation, or enrollment code mismatch."""

    error = "invalid-totp"


class LoginFailedError(TwoFactorError):
    """Credentials rejected. Same message for unknown users and bad passwords."""

    error = "login-failed"

    def __init__(self, reason: Optional[str] = "Incorrect credentials", **details: Any):
        super().__init__(reason, **details)


# Gate outcomes


class TotpRequiredError(TwoFactorError):
    error = "totp-required"

    def __init__(self, reason: Optional[str] = "TOTP Required", **details: Any):
        super().__init__(reason, **details)


class TotpInvalidError(TwoFactorError):
    error = "totp-invalid"

    def __init__(self, reason: Optional[str] = "TOTP Invalid", **details: Any):
        super().__init__(reason, **details)


class TotpMaxAttemptsError(TwoFactorError):
    error = "totp-max-attempts"

    def __init__(
        self,
        reason: Optional[str] = "TOTP Maximum Failed Attempts Reached",
        **details: Any
    ):
        super().__init__(reason, **details)


# Infrastructure


class EmailSendError(TwoFactorError):
    error = "error-email-send-failed"
