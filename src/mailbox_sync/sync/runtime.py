"""Wiring of store, Google clients and sync components from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from mailbox_sync.config.settings import AppSettings
from mailbox_sync.errors import ConfigurationError
from mailbox_sync.gmail.auth import GoogleTokenRefresher
from mailbox_sync.gmail.client import ClientFactory, gmail_client_factory
from mailbox_sync.storage.sync_db import SyncDb
from mailbox_sync.sync.account import AccountSynchronizer
from mailbox_sync.sync.batch import BatchSynchronizer
from mailbox_sync.sync.credentials import CredentialManager
from mailbox_sync.sync.scheduler import SyncScheduler

logger = logging.getLogger(__name__)


def open_store(settings: AppSettings) -> SyncDb:
    """Open the sqlite store and make sure its schema exists.

    Args:
        settings: Application settings.

    Returns:
        Initialized SyncDb.
    """
    sqlite_path = settings.storage.sqlite_path
    sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    db = SyncDb(sqlite_path=sqlite_path)
    db.init_schema()
    return db


@dataclass
class SyncRuntime:
    """Fully wired sync engine sharing one store."""

    settings: AppSettings
    db: SyncDb
    client_factory: ClientFactory
    credentials: CredentialManager
    batch: BatchSynchronizer
    accounts: AccountSynchronizer
    scheduler: SyncScheduler

    def close(self) -> None:
        """Release the store connection."""
        self.db.close()


def build_runtime(settings: AppSettings) -> SyncRuntime:
    """Build the sync engine for the configured Google project.

    Args:
        settings: Application settings.

    Returns:
        SyncRuntime ready to run syncs.

    Raises:
        ConfigurationError: If Google OAuth client settings are missing.
    """
    if settings.google is None:
        raise ConfigurationError(
            "Missing Google settings. Set MBX_GOOGLE__CLIENT_ID and MBX_GOOGLE__CLIENT_SECRET.",
        )

    db = open_store(settings)
    client_factory = gmail_client_factory(user_id=settings.google.user_id)
    credentials = CredentialManager(
        store=db,
        refresher=GoogleTokenRefresher(settings=settings.google),
        safety_margin=timedelta(seconds=settings.sync.token_safety_margin_s),
        token_ttl=timedelta(seconds=settings.sync.token_ttl_s),
    )
    batch = BatchSynchronizer(store=db, client_factory=client_factory, settings=settings.sync)
    accounts = AccountSynchronizer(batch=batch, credentials=credentials)
    scheduler = SyncScheduler(store=db, account_sync=accounts, settings=settings.scheduler)
    logger.debug("Sync runtime ready (store %s)", db.sqlite_path)
    return SyncRuntime(
        settings=settings,
        db=db,
        client_factory=client_factory,
        credentials=credentials,
        batch=batch,
        accounts=accounts,
        scheduler=scheduler,
    )
