"""Two-Factor Authentication Models

State records for the second-factor subsystem plus the request/response
schemas used by the HTTP routers.

- UserSecondFactor: persisted per-user second-factor state
- EmailCode: pending email challenge (bcrypt hash + expiry)
- BackupCodeBatch: freshly generated recovery codes, returned exactly once
- VerificationRequest / VerificationResult: one verification call
- TwoFactorPayload: explicit second-factor payload attached to a call
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field


class TwoFactorMethod(str, Enum):
    """Second-factor methods a code can be checked against."""

    TOTP = "totp"
    EMAIL = "email"
    PASSWORD = "password"


@dataclass
class EmailCode:
    """Pending email code. Only the bcrypt hash is stored."""

    code_hash: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code_hash": self.code_hash,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, doc: Dict[str, Any]) -> "EmailCode":
        return cls(
            code_hash=doc["code_hash"],
            created_at=doc["created_at"],
            expires_at=doc["expires_at"],
        )


@dataclass
class UserSecondFactor:
    """Second-factor state for one user.

    Attributes:
        user_id: Owner of this record
        enabled: TOTP is active; implies `secret` is set
        secret: Active TOTP seed (base32)
        temp_secret: Candidate seed during enrollment, never trusted for login
        backup_code_hashes: bcrypt hashes of unused backup codes; empty or a
            full fresh batch minus consumed codes
        failed_attempts: Consecutive failed verifications
        enrolled_at: When the current secret was confirmed
        email_enabled: User opted into email codes
        email_code: Pending email challenge, if any
    """

    user_id: str
    enabled: bool = False
    secret: Optional[str] = None
    temp_secret: Optional[str] = None
    backup_code_hashes: List[str] = field(default_factory=list)
    failed_attempts: int = 0
    enrolled_at: Optional[datetime] = None
    email_enabled: bool = False
    email_code: Optional[EmailCode] = None

    @property
    def has_pending_enrollment(self) -> bool:
        return bool(self.temp_secret)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for Firestore storage."""
        return {
            "user_id": self.user_id,
            "enabled": self.enabled,
            "secret": self.secret,
            "temp_secret": self.temp_secret,
            "backup_code_hashes": list(self.backup_code_hashes),
            "failed_attempts": self.failed_attempts,
            "enrolled_at": self.enrolled_at,
            "email_enabled": self.email_enabled,
            "email_code": self.email_code.to_dict() if self.email_code else None,
        }

    @classmethod
    def from_firestore(cls, doc: Dict[str, Any]) -> "UserSecondFactor":
        """Create UserSecondFactor from Firestore document.

        Args:
            doc: Firestore document dictionary

        Returns:
            UserSecondFactor instance
        """
        email_code = doc.get("email_code")
        return cls(
            user_id=doc.get("user_id", ""),
            enabled=bool(doc.get("enabled", False)),
            secret=doc.get("secret") or None,
            temp_secret=doc.get("temp_secret") or None,
            backup_code_hashes=list(doc.get("backup_code_hashes") or []),
            failed_attempts=int(doc.get("failed_attempts", 0)),
            enrolled_at=doc.get("enrolled_at"),
            email_enabled=bool(doc.get("email_enabled", False)),
            email_code=EmailCode.from_dict(email_code) if email_code else None,
        )


@dataclass
class BackupCodeBatch:
    """A fresh batch of backup codes. Plaintext is never persisted."""

    plaintext_codes: List[str]
    hashes: List[str]


@dataclass
class VerificationRequest:
    """Input to a single code verification."""

    user_id: str
    submitted_code: str
    secret: Optional[str] = None
    temp_secret: Optional[str] = None
    backup_hashes: List[str] = field(default_factory=list)


@dataclass
class VerificationResult:
    """Outcome of a verification.

    When a backup code matched, `matched_backup_hash` names the hash the
    caller must consume; otherwise the code stays valid for replay.
    """

    success: bool
    matched_backup_hash: Optional[str] = None

    def __bool__(self) -> bool:
        return self.success


@dataclass
class PendingEnrollment:
    """Result of starting enrollment: the temp secret and its otpauth URL."""

    secret: str
    url: str


@dataclass
class TwoFactorPayload:
    """Explicit second-factor payload attached to a call."""

    code: str
    method: str

    @classmethod
    def from_legacy_argument(cls, value: Any) -> Optional["TwoFactorPayload"]:
        """Recognize a trailing `{twoFactorCode, twoFactorMethod}` argument."""
        if not isinstance(value, dict):
            return None
        code = value.get("twoFactorCode")
        method = value.get("twoFactorMethod")
        if not code or not method:
            return None
        return cls(code=str(code), method=str(method))


@dataclass
class ConnectionInfo:
    """Transport facts about the caller, used for header codes and the
    remembered-authorization fingerprint."""

    client_address: Optional[str] = None
    http_headers: Dict[str, str] = field(default_factory=dict)
    auth_token: Optional[str] = None

    def header(self, name: str) -> Optional[str]:
        wanted = name.lower()
        for key, value in self.http_headers.items():
            if key.lower() == wanted:
                return value
        return None

    @property
    def user_agent(self) -> str:
        return self.header("user-agent") or ""


@dataclass
class TwoFactorOptions:
    """Per-call knobs for a second-factor check."""

    disable_password_fallback: bool = False
    require_password: bool = False
    disable_remember_me: bool = False


@dataclass
class InvalidCodeResult:
    """What a check did after a missing or invalid code."""

    code_generated: bool = False
    code_expires: Optional[datetime] = None
    email_or_username: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"codeGenerated": self.code_generated}
        if self.code_expires is not None:
            data["codeExpires"] = self.code_expires.isoformat()
        if self.email_or_username is not None:
            data["emailOrUsername"] = self.email_or_username
        return data


# =============================================================================
# API schemas
# =============================================================================


class TwoFactorCodeRequest(BaseModel):
    """Body carrying a code for validate/disable/regenerate."""

    code: str = Field(..., min_length=1, description="TOTP or backup code")


class EmailTwoFactorRequest(BaseModel):
    enabled: bool = Field(..., description="Turn email codes on or off")


class SendEmailCodeRequest(BaseModel):
    email_or_username: str = Field(..., min_length=1)


class EnableResponse(BaseModel):
    secret: str
    url: str
    qr_code_data_uri: str


class BackupCodesResponse(BaseModel):
    """Plaintext backup codes, shown once. None when no codes were issued."""

    codes: Optional[List[str]] = None


class CodesRemainingResponse(BaseModel):
    remaining: int


class MethodCallRequest(BaseModel):
    """Generic method invocation body for the method pipeline endpoint."""

    params: List[Any] = Field(default_factory=list)
    two_factor_code: Optional[str] = None
    two_factor_method: Optional[str] = None


class LoginRequest(BaseModel):
    """Login body: password credentials or a resume token, plus optional totp."""

    user: Optional[str] = None
    password: Optional[str] = Field(
        None, description="SHA-256 hex digest of the password"
    )
    resume: Optional[str] = None
    totp: Optional[Dict[str, Any]] = None


class LoginResponse(BaseModel):
    user_id: str
    token: str
    type: str
