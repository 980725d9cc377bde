"""Shared async Firestore client.

Used by the Firestore-backed secret store, session store and user directory.
"""

import os
import threading
from typing import Optional
from google.cloud.firestore_v1 import AsyncClient
from google.oauth2 import service_account
from app.config import get_settings
from app.utils.logger import get_logger

logger = get_logger(__name__)

_firestore_client: Optional[AsyncClient] = None
_init_lock = threading.Lock()


def get_firestore_client() -> AsyncClient:
    """Get singleton async Firestore client instance.

    Returns:
        AsyncClient: Shared Firestore async client instance

    Note:
        Uses explicit service account credentials if GOOGLE_APPLICATION_CREDENTIALS
        is set (local development), otherwise relies on ADC (production).
    """
    global _firestore_client

    if _firestore_client is not None:
        return _firestore_client

    with _init_lock:
        if _firestore_client is None:
            settings = get_settings()
            logger.info(
                "Initializing Firestore async client",
                project=settings.gcp_project_id,
                database=settings.firestore_database,
            )

            service_account_path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
            if service_account_path and os.path.exists(service_account_path):
                credentials = service_account.Credentials.from_service_account_file(
                    service_account_path
                )
                logger.info(
                    "Using explicit service account credentials for Firestore",
                    path=service_account_path,
                )
                _firestore_client = AsyncClient(
                    project=settings.gcp_project_id,
                    database=settings.firestore_database,
                    credentials=credentials,
                )
            else:
                logger.info("Using ADC for Firestore")
                _firestore_client = AsyncClient(
                    project=settings.gcp_project_id,
                    database=settings.firestore_database,
                )

    return _firestore_client


async def close_firestore_client() -> None:
    """Close the Firestore client connection on application shutdown."""
    global _firestore_client
    if _firestore_client is not None:
        await _firestore_client.close()
        _firestore_client = None
        logger.info("Firestore client closed")


def reset_firestore_client() -> None:
    """Reset the singleton for testing purposes."""
    global _firestore_client
    _firestore_client = None
