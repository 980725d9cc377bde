"""User Account Models

The user directory is owned by the chat server. This module only models the
fields the two-factor subsystem reads: identity, verified email addresses,
the password hash used by the password fallback check, and linked OAuth
services.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List


@dataclass
class UserEmail:
    """An email address attached to a user account."""

    address: str
    verified: bool = False


@dataclass
class UserAccount:
    """User account as stored by the chat server.

    Attributes:
        user_id: Stable user identifier
        username: Login name (may be absent for partially provisioned accounts)
        emails: Email addresses with verification state
        password_bcrypt: bcrypt hash of the client-side SHA-256 password digest
        oauth_services: Names of linked OAuth providers (e.g. "google")
        language: Preferred UI language
        last_login_at: Last successful login timestamp
    """

    user_id: str
    username: Optional[str] = None
    emails: List[UserEmail] = field(default_factory=list)
    password_bcrypt: Optional[str] = None
    oauth_services: List[str] = field(default_factory=list)
    language: Optional[str] = None
    last_login_at: Optional[datetime] = None

    @property
    def verified_emails(self) -> List[str]:
        """Addresses the user has verified, in stored order."""
        return [email.address for email in self.emails if email.verified]

    @property
    def is_oauth_user(self) -> bool:
        return bool(self.oauth_services)

    @property
    def has_password(self) -> bool:
        return bool(self.password_bcrypt and self.password_bcrypt.strip())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for Firestore storage."""
        return {
            "user_id": self.user_id,
            "username": self.username or "",
            "emails": [
                {"address": email.address, "verified": email.verified}
                for email in self.emails
            ],
            "password_bcrypt": self.password_bcrypt or "",
            "oauth_services": list(self.oauth_services),
            "language": self.language or "",
            "last_login_at": self.last_login_at,
        }

    @classmethod
    def from_firestore(cls, doc: Dict[str, Any]) -> "UserAccount":
        """Create UserAccount from Firestore document.

        Args:
            doc: Firestore document dictionary

        Returns:
            UserAccount instance
        """
        emails = doc.get("emails") or []
        if not isinstance(emails, list):
            emails = []

        return cls(
            user_id=doc.get("user_id", ""),
            username=doc.get("username") or None,
            emails=[
                UserEmail(
                    address=entry.get("address", ""),
                    verified=bool(entry.get("verified", False)),
                )
                for entry in emails
                if isinstance(entry, dict)
            ],
            password_bcrypt=doc.get("password_bcrypt") or None,
            oauth_services=list(doc.get("oauth_services") or []),
            language=doc.get("language") or None,
            last_login_at=doc.get("last_login_at"),
        )
