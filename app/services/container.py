"""Service wiring for the two-factor subsystem

Builds the stores for the configured backend and composes the verifier,
checks, checker, enrollment flow, login gate and method pipeline on top.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from app.config import Settings, get_settings
from app.middleware.method_pipeline import MethodPipeline
from app.middleware.two_factor_required import TwoFactorRequired
from app.models.two_factor import TwoFactorOptions
from app.services.backup_codes import BackupCodeGenerator
from app.services.code_checks import EmailCheck, PasswordCheckFallback, TOTPCheck
from app.services.code_verifier import CodeVerifier
from app.services.enrollment import EnrollmentFlow
from app.services.login_gate import LoginGate
from app.services.login_handlers import create_login_handlers
from app.services.mailer import Mailer, create_mailer
from app.services.notifications import UserChangeNotifier
from app.services.secret_store import FirestoreSecretStore, InMemorySecretStore, SecretStore
from app.services.session_store import (
    FirestoreSessionStore,
    InMemorySessionStore,
    SessionStore,
)
from app.services.two_factor_checker import TwoFactorChecker
from app.services.user_service import (
    FirestoreUserDirectory,
    InMemoryUserDirectory,
    UserDirectory,
)
from app.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class TwoFactorServices:
    settings: Settings
    store: SecretStore
    sessions: SessionStore
    users: UserDirectory
    notifier: UserChangeNotifier
    mailer: Mailer
    verifier: CodeVerifier
    totp_check: TOTPCheck
    email_check: EmailCheck
    password_check: PasswordCheckFallback
    checker: TwoFactorChecker
    enrollment: EnrollmentFlow
    login_gate: LoginGate
    pipeline: MethodPipeline

    def two_factor_required(self, **option_overrides) -> TwoFactorRequired:
        """Interceptor for pipeline methods that need a second factor."""
        return TwoFactorRequired(
            self.checker, self.users, TwoFactorOptions(**option_overrides)
        )


def build_services(
    settings: Optional[Settings] = None,
    store: Optional[SecretStore] = None,
    sessions: Optional[SessionStore] = None,
    users: Optional[UserDirectory] = None,
    mailer: Optional[Mailer] = None,
) -> TwoFactorServices:
    """Compose the subsystem. Explicit collaborators override the backend."""
    settings = settings or get_settings()

    if settings.storage_backend == "firestore":
        from app.services.firestore_client import get_firestore_client

        client = get_firestore_client()
        store = store or FirestoreSecretStore(
            client, settings.firestore_two_factor_collection
        )
        sessions = sessions or FirestoreSessionStore(
            client, settings.firestore_login_tokens_collection
        )
        users = users or FirestoreUserDirectory(
            client, settings.firestore_users_collection
        )
    elif settings.storage_backend != "memory":
        raise ValueError(f"Unknown storage backend: {settings.storage_backend}")

    store = store or InMemorySecretStore()
    sessions = sessions or InMemorySessionStore()
    users = users or InMemoryUserDirectory()
    mailer = mailer or create_mailer(settings)
    notifier = UserChangeNotifier()

    verifier = CodeVerifier(store, settings)
    totp_check = TOTPCheck(store, verifier, settings)
    email_check = EmailCheck(store, verifier, mailer, settings)
    password_check = PasswordCheckFallback(settings)
    checker = TwoFactorChecker(
        store, sessions, totp_check, email_check, password_check, settings
    )
    enrollment = EnrollmentFlow(
        store,
        verifier,
        users,
        sessions,
        notifier,
        mailer,
        generator=BackupCodeGenerator(
            count=settings.backup_code_count, rounds=settings.backup_code_hash_rounds
        ),
        settings=settings,
    )
    login_gate = LoginGate(
        checker, store, users, sessions, create_login_handlers(sessions, users)
    )

    logger.info("Two-factor services built", storage_backend=settings.storage_backend)

    return TwoFactorServices(
        settings=settings,
        store=store,
        sessions=sessions,
        users=users,
        notifier=notifier,
        mailer=mailer,
        verifier=verifier,
        totp_check=totp_check,
        email_check=email_check,
        password_check=password_check,
        checker=checker,
        enrollment=enrollment,
        login_gate=login_gate,
        pipeline=MethodPipeline(),
    )


def get_two_factor_services(request: Request) -> TwoFactorServices:
    """FastAPI dependency: the services attached to the running app."""
    return request.app.state.two_factor_services
