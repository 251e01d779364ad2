"""Periodic multi-account sync with per-account failure isolation."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from mailbox_sync.config.settings import SchedulerSettings
from mailbox_sync.errors import ConfigurationError, CredentialInvalidError, PersistenceError
from mailbox_sync.models.state import AccountRow
from mailbox_sync.models.types import (
    AccountSyncResult,
    BackfillStats,
    SyncScope,
    SyncStats,
    SyncTrigger,
    TickStats,
)
from mailbox_sync.storage.protocols import SyncStore
from mailbox_sync.sync.account import AccountSynchronizer
from mailbox_sync.sync.policies import isolate_and_collect

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Return current UTC time with timezone info."""
    return datetime.now(tz=UTC)


def incremental_since(store: SyncStore, account_id: int, *, now: datetime) -> datetime | None:
    """Return the lower bound for an incremental sync, never later than ``now``.

    Args:
        store: Metadata store.
        account_id: Account id.
        now: Current time.

    Returns:
        The stored watermark clamped to ``now``, or None if there is none.
    """
    since = store.get_latest_synced_timestamp(account_id)
    if since is not None and since > now:
        logger.warning(
            "Watermark %s is in the future; clamping to %s",
            since.isoformat(),
            now.isoformat(),
            extra={"account_id": account_id},
        )
        return now
    return since


class SyncScheduler:
    """Runs account syncs on a timer or on demand, one tick at a time."""

    def __init__(
        self,
        *,
        store: SyncStore,
        account_sync: AccountSynchronizer,
        settings: SchedulerSettings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize the scheduler.

        Args:
            store: Account and metadata store.
            account_sync: Account-level synchronizer.
            settings: Scheduler settings.
            sleep: Sleep function used between accounts (injectable for tests).
            now: Clock (injectable for tests).
        """
        self._store = store
        self._account_sync = account_sync
        self._s = settings
        self._sleep = sleep
        self._now = now
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        """Return whether a tick is in flight."""
        return self._lock.locked()

    async def trigger(self) -> TickStats:
        """Run one tick now for an operator; ignores the enabled flag.

        Returns:
            TickStats of the run.
        """
        return await self.run_tick(trigger=SyncTrigger.manual)

    async def run_tick(self, *, trigger: SyncTrigger = SyncTrigger.timer) -> TickStats:
        """Sync every eligible account once, sequentially.

        Args:
            trigger: What started the tick; timer ticks require ``enabled``.

        Returns:
            Aggregated TickStats. ``skipped_reason`` is set when nothing ran.

        Raises:
            Exception: Store failures while selecting accounts, after logging.
        """
        stats = TickStats(trigger=trigger, started_at=self._now())
        if self._lock.locked():
            logger.warning("Sync tick (%s) skipped: a tick is already in progress", trigger.value)
            stats.skipped_reason = "tick already in progress"
            return stats

        async with self._lock:
            started = time.monotonic()
            try:
                self._ensure_runnable(trigger)
            except ConfigurationError as exc:
                logger.error("Sync tick (%s) skipped: %s", trigger.value, exc)
                stats.skipped_reason = str(exc)
                return stats

            try:
                accounts = self._store.list_active_accounts(self._s.max_accounts_per_tick)
            except Exception:
                logger.exception("Could not select accounts for sync tick")
                raise

            logger.info("Sync tick (%s): %d active accounts", trigger.value, len(accounts))
            outcomes = await isolate_and_collect(
                accounts,
                self._sync_account,
                pause_s=self._s.account_delay_s,
                sleep=self._sleep,
            )

            for outcome in outcomes:
                account = outcome.key
                stats.accounts_attempted += 1
                if outcome.ok and outcome.value is not None:
                    stats.accounts_succeeded += 1
                    stats.total_new_items += outcome.value.inserted
                    stats.results.append(
                        AccountSyncResult(
                            account_id=account.id,
                            email=account.email,
                            ok=True,
                            stats=outcome.value,
                        ),
                    )
                    continue

                error = outcome.error
                message = f"{account.email}: {error}"
                stats.accounts_failed += 1
                stats.errors.append(message)
                stats.results.append(
                    AccountSyncResult(account_id=account.id, email=account.email, ok=False, error=message),
                )
                self._log_account_failure(account, error)

            stats.elapsed_ms = int((time.monotonic() - started) * 1000)
            self._log_summary(stats)
            return stats

    async def run_backfill_tick(
        self,
        *,
        trigger: SyncTrigger = SyncTrigger.timer,
    ) -> BackfillStats:
        """Fetch one more batch of older history for a single account.

        The account whose backfill was visited least recently is resumed from
        its saved cursor with an unbounded query. A failure is logged and
        reported in the result; it does not raise.

        Args:
            trigger: What started the pass; timer passes require ``enabled``
                and ``backfill_enabled``.

        Returns:
            BackfillStats. ``skipped_reason`` is set when nothing ran.

        Raises:
            Exception: Store failures while selecting the account, after logging.
        """
        stats = BackfillStats(started_at=self._now())
        if self._lock.locked():
            logger.warning("Backfill (%s) skipped: a tick is already in progress", trigger.value)
            stats.skipped_reason = "tick already in progress"
            return stats

        async with self._lock:
            started = time.monotonic()
            try:
                self._ensure_runnable(trigger)
                if trigger == SyncTrigger.timer and not self._s.backfill_enabled:
                    raise ConfigurationError("backfill is disabled")
            except ConfigurationError as exc:
                logger.info("Backfill (%s) skipped: %s", trigger.value, exc)
                stats.skipped_reason = str(exc)
                return stats

            try:
                account = self._store.select_backfill_account()
            except Exception:
                logger.exception("Could not select an account for backfill")
                raise
            if account is None:
                logger.debug("Backfill (%s): every account is complete", trigger.value)
                stats.skipped_reason = "no account needs backfill"
                return stats

            stats.account_id = account.id
            stats.email = account.email
            extra = {"account_id": account.id}
            self._store.mark_backfill_attempted(account_id=account.id, attempted_at=self._now())
            scope = SyncScope(
                max_items=self._s.backfill_batch_size,
                full_sync=True,
                start_cursor=account.backfill_cursor,
            )
            logger.info(
                "Backfill of %s %s",
                account.email,
                "resuming from saved cursor" if account.backfill_cursor else "starting",
                extra=extra,
            )
            try:
                result = await self._account_sync.sync(account_id=account.id, scope=scope)
            except Exception as exc:
                stats.error = f"{account.email}: {exc}"
                self._log_account_failure(account, exc)
            else:
                updated = self._store.record_backfill_pass(
                    account_id=account.id,
                    processed=result.processed,
                    next_cursor=result.next_cursor,
                )
                stats.processed = result.processed
                stats.new_items = result.inserted
                stats.next_cursor = updated.backfill_cursor
                stats.completed = updated.backfill_complete
                logger.info(
                    "Backfill of %s: %d processed, %d new%s",
                    account.email,
                    result.processed,
                    result.inserted,
                    " (complete)" if stats.completed else "",
                    extra=extra,
                )

            stats.elapsed_ms = int((time.monotonic() - started) * 1000)
            return stats

    async def run_forever(
        self,
        *,
        stop: asyncio.Event | None = None,
        max_ticks: int | None = None,
    ) -> None:
        """Tick every ``interval_s`` seconds until ``stop`` is set.

        Each tick is followed by one backfill pass when ``backfill_enabled``.
        The interval is measured from the end of a tick, so a slow tick delays
        the next one instead of overlapping it.

        Args:
            stop: Event that ends the loop.
            max_ticks: Optional number of ticks after which to return.
        """
        try:
            self._ensure_runnable(SyncTrigger.timer)
        except ConfigurationError as exc:
            logger.error("Scheduler not started: %s", exc)
            return

        stop = stop or asyncio.Event()
        logger.info("Scheduler started (every %.0fs)", self._s.interval_s)
        ticks = 0
        while not stop.is_set():
            try:
                await self.run_tick(trigger=SyncTrigger.timer)
            except Exception:
                logger.exception("Sync tick failed; retrying at the next interval")
            if self._s.backfill_enabled and not stop.is_set():
                try:
                    await self.run_backfill_tick(trigger=SyncTrigger.timer)
                except Exception:
                    logger.exception("Backfill tick failed; retrying at the next interval")
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._s.interval_s)
            except TimeoutError:
                continue
        logger.info("Scheduler stopped after %d ticks", ticks)

    def _ensure_runnable(self, trigger: SyncTrigger) -> None:
        """Raise ConfigurationError when a tick must not run.

        Args:
            trigger: What started the tick.

        Raises:
            ConfigurationError: If a timer tick runs while disabled.
        """
        if trigger == SyncTrigger.timer and not self._s.enabled:
            raise ConfigurationError(
                "scheduler is disabled (set MBX_SCHEDULER__ENABLED=true to enable it)",
            )

    async def _sync_account(self, account: AccountRow) -> SyncStats:
        """Sync one account incrementally from its stored watermark.

        The attempt is recorded first, so an account that keeps failing
        moves behind the others in the next tick.

        Args:
            account: Account to sync.

        Returns:
            SyncStats of the account.
        """
        now = self._now()
        self._store.mark_account_attempted(account_id=account.id, attempted_at=now)
        since = incremental_since(self._store, account.id, now=now)
        scope = SyncScope(max_items=self._s.max_items_per_account, since=since)
        logger.debug(
            "Syncing %s (rank %s, since %s)",
            account.email,
            account.staleness_rank,
            since.isoformat() if since else "default lookback",
            extra={"account_id": account.id},
        )
        stats = await self._account_sync.sync(account_id=account.id, scope=scope)
        self._store.mark_account_synced(account_id=account.id, synced_at=self._now())
        return stats

    def _log_account_failure(self, account: AccountRow, error: Exception | None) -> None:
        """Log a per-account failure with a severity matching its kind."""
        extra = {"account_id": account.id}
        if isinstance(error, PersistenceError):
            logger.error("Store failure while syncing %s: %s", account.email, error, extra=extra)
        elif isinstance(error, CredentialInvalidError):
            logger.warning("Credential unusable for %s: %s", account.email, error, extra=extra)
        else:
            logger.warning("Sync failed for %s: %r", account.email, error, extra=extra)

    def _log_summary(self, stats: TickStats) -> None:
        """Log the run-level summary of a tick."""
        logger.info(
            "Sync tick (%s) finished in %.2fs: %d/%d accounts ok, %d new items",
            stats.trigger.value,
            stats.elapsed_ms / 1000,
            stats.accounts_succeeded,
            stats.accounts_attempted,
            stats.total_new_items,
        )
        for message in stats.errors:
            logger.warning("  %s", message)
