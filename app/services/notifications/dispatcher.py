import asyncio
import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from app.config.settings import settings
from app.db.models import (
    DeliveryStatus,
    ScheduledNotificationDelivery,
)
from app.db.session import SessionLocal
from app.schemas.dispatch_schemas import DeliveryFailure, DispatchReport
from app.schemas.recipient_schemas import (
    RecipientDescriptor,
    ResolvedRecipient,
    parse_recipients_json,
)
from app.schemas.schedule_schemas import ScheduleDescriptor, parse_schedule_json
from app.services.notifications.channels import ChannelAdapterRegistry
from app.services.notifications.directory import (
    SqlPreferenceStore,
    SqlRecipientDirectory,
)
from app.services.notifications.recipient_resolver import RecipientResolver
from app.services.notifications.repository import ScheduledNotificationRepository
from app.services.scheduling.state_machine import FireOutcome, advance_after_fire
from app.utils.datetime_utils import optional_to_utc, to_naive_utc, to_utc, utc_now
from app.utils.errors import RecipientResolutionError
from app.utils.logging import get_logger

logger = get_logger()


class _ClaimedRecord(BaseModel):
    """Detached copy of a claimed record, read once right after the claim commits."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    notification_type: str
    channels: List[str]
    recipients: List[RecipientDescriptor]
    payload: Dict[str, Any]
    schedule: ScheduleDescriptor
    occurrence_count: int
    occurrence_at: datetime
    sent_at: Optional[datetime]


class _DeliveryResult(BaseModel):
    user_id: str
    channel: str
    status: DeliveryStatus
    error: Optional[str] = None


class NotificationDispatcher:
    """
    Fires due scheduled notifications.

    Each record is claimed with a conditional UPDATE before any I/O, so
    overlapping runs never fire the same occurrence twice. Records are worked
    on concurrently up to `max_workers`. Database sessions are opened per step,
    run in the default thread pool and never held across a delivery. While a
    record is in flight its claim is refreshed every `claim_refresh_seconds`,
    so only a run that has really died loses it to stale-claim recovery.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        resolver: Optional[RecipientResolver] = None,
        adapters: Optional[ChannelAdapterRegistry] = None,
        batch_size: Optional[int] = None,
        max_workers: Optional[int] = None,
        delivery_concurrency: Optional[int] = None,
        delivery_timeout_seconds: Optional[float] = None,
        claim_timeout_seconds: Optional[int] = None,
        claim_refresh_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.resolver = resolver or RecipientResolver(
            SqlRecipientDirectory(session_factory), SqlPreferenceStore(session_factory)
        )
        self.adapters = adapters or ChannelAdapterRegistry()
        self.batch_size = batch_size or settings.DISPATCH_BATCH_SIZE
        self.max_workers = max_workers or settings.DISPATCH_MAX_WORKERS
        self.delivery_concurrency = (
            delivery_concurrency or settings.DISPATCH_DELIVERY_CONCURRENCY
        )
        self.delivery_timeout_seconds = (
            delivery_timeout_seconds or settings.CHANNEL_DELIVERY_TIMEOUT_SECONDS
        )
        self.claim_timeout_seconds = (
            claim_timeout_seconds or settings.DISPATCH_CLAIM_TIMEOUT_SECONDS
        )
        self.claim_refresh_seconds = claim_refresh_seconds or self.claim_timeout_seconds / 3

    async def process_due(
        self, now: Optional[datetime] = None, limit: Optional[int] = None
    ) -> DispatchReport:
        """
        Fire every record due at `now`.

        Args:
            now: Tick instant; defaults to the current UTC time
            limit: Maximum records to pick up; defaults to the configured batch size

        Returns:
            DispatchReport summarising claims, firings and delivery failures
        """
        now = to_utc(now) if now is not None else utc_now()
        report = DispatchReport()

        loop = asyncio.get_event_loop()
        report.recovered = await loop.run_in_executor(None, self._recover_stale_claims, now)
        due_ids = await loop.run_in_executor(
            None, self._select_due, now, limit or self.batch_size
        )
        report.selected = len(due_ids)

        if not due_ids:
            logger.debug("No scheduled notifications due")
            return report

        semaphore = asyncio.Semaphore(self.max_workers)

        async def run(record_id: str):
            async with semaphore:
                await self._process_record(record_id, now, report)

        results = await asyncio.gather(
            *(run(record_id) for record_id in due_ids), return_exceptions=True
        )

        for record_id, result in zip(due_ids, results):
            if isinstance(result, Exception):
                logger.error(
                    f"Unexpected error dispatching scheduled notification {record_id}: {result}"
                )
                report.failures.append(
                    DeliveryFailure(notification_id=record_id, error=str(result))
                )

        logger.info(
            f"Dispatch run finished: selected={report.selected} claimed={report.claimed} "
            f"fired={report.fired} skipped={report.skipped} released={report.released} "
            f"recovered={report.recovered} delivered={report.deliveries_succeeded} "
            f"failed={report.deliveries_failed}"
        )
        return report

    def _recover_stale_claims(self, now: datetime) -> int:
        claimed_before = now - timedelta(seconds=self.claim_timeout_seconds)
        recovered = 0

        with self.session_factory() as db_session:
            repository = ScheduledNotificationRepository(db_session)
            for record_id in repository.find_stale_claim_ids(claimed_before):
                if repository.recover_stale_claim(record_id, claimed_before):
                    logger.warning(
                        f"Recovered stale claim on scheduled notification {record_id}; "
                        "its occurrence will be replayed"
                    )
                    recovered += 1
            db_session.commit()

        return recovered

    def _select_due(self, now: datetime, limit: int) -> List[str]:
        with self.session_factory() as db_session:
            return ScheduledNotificationRepository(db_session).select_due_ids(now, limit)

    def _claim(self, record_id: str, claim_token: str, now: datetime) -> Optional[_ClaimedRecord]:
        with self.session_factory() as db_session:
            repository = ScheduledNotificationRepository(db_session)
            if not repository.claim(record_id, claim_token, now):
                db_session.rollback()
                return None
            db_session.commit()

            record = repository.get(record_id)
            return _ClaimedRecord(
                id=record.id,
                name=record.name,
                notification_type=record.notification_type,
                channels=json.loads(record.channels),
                recipients=parse_recipients_json(record.recipients),
                payload=json.loads(record.payload or "{}"),
                schedule=parse_schedule_json(record.schedule),
                occurrence_count=record.occurrence_count,
                occurrence_at=to_utc(record.next_occurrence_at),
                sent_at=optional_to_utc(record.sent_at),
            )

    def _release(self, record_id: str, claim_token: str, error: str) -> bool:
        with self.session_factory() as db_session:
            released = ScheduledNotificationRepository(db_session).release(
                record_id, claim_token, error
            )
            db_session.commit()
        return released

    def _refresh_claim(self, record_id: str, claim_token: str, claimed_at: datetime) -> bool:
        with self.session_factory() as db_session:
            refreshed = ScheduledNotificationRepository(db_session).refresh_claim(
                record_id, claim_token, claimed_at
            )
            db_session.commit()
        return refreshed

    def _record_firing(
        self,
        record: _ClaimedRecord,
        claim_token: str,
        results: List[_DeliveryResult],
        outcome: FireOutcome,
        fired_at: datetime,
    ) -> bool:
        """Store the delivery log and the new record state in one transaction, or neither."""
        with self.session_factory() as db_session:
            repository = ScheduledNotificationRepository(db_session)
            repository.add_deliveries(
                ScheduledNotificationDelivery(
                    scheduled_notification_id=record.id,
                    occurrence_number=outcome.occurrence_count,
                    user_id=result.user_id,
                    channel=result.channel,
                    status=result.status,
                    error_message=result.error,
                    attempted_at=to_naive_utc(fired_at),
                )
                for result in results
            )
            db_session.flush()

            if not repository.complete(record.id, claim_token, outcome):
                db_session.rollback()
                return False
            db_session.commit()
        return True

    async def _keep_claim_alive(self, record_id: str, claim_token: str, claimed_at: datetime, log):
        """Move `claimed_at` forward while the record is in flight so recovery leaves it alone."""
        loop = asyncio.get_event_loop()
        while True:
            await asyncio.sleep(self.claim_refresh_seconds)
            # Never earlier than the tick the claim was taken at
            refreshed_at = max(claimed_at, utc_now())
            try:
                held = await loop.run_in_executor(
                    None, self._refresh_claim, record_id, claim_token, refreshed_at
                )
            except Exception as e:
                log.warning(f"Failed to refresh claim, will retry: {e}")
                continue
            if not held:
                return

    async def _process_record(self, record_id: str, now: datetime, report: DispatchReport):
        log = logger.bind(notification_id=record_id)
        claim_token = str(uuid.uuid4())
        loop = asyncio.get_event_loop()

        try:
            record = await loop.run_in_executor(None, self._claim, record_id, claim_token, now)
        except Exception as e:
            # Release is guarded by the token, so it is a no-op if the claim never committed
            log.error(f"Failed to claim scheduled notification: {e}")
            await loop.run_in_executor(None, self._release, record_id, claim_token, str(e))
            raise

        if record is None:
            report.skipped += 1
            log.info("Scheduled notification already claimed or no longer due; skipping")
            return

        report.claimed += 1

        keep_alive = asyncio.ensure_future(
            self._keep_claim_alive(record_id, claim_token, now, log)
        )
        try:
            await self._fire(record, claim_token, now, report, log)
        finally:
            keep_alive.cancel()

    async def _fire(
        self,
        record: _ClaimedRecord,
        claim_token: str,
        fired_at: datetime,
        report: DispatchReport,
        log,
    ):
        loop = asyncio.get_event_loop()

        try:
            recipients = await self.resolver.resolve(
                record.recipients, record.channels, record.notification_type, fired_at
            )
        except RecipientResolutionError as e:
            await loop.run_in_executor(None, self._release, record.id, claim_token, e.message)
            report.released += 1
            report.failures.append(DeliveryFailure(notification_id=record.id, error=e.message))
            log.warning(f"Recipient resolution failed, claim released for retry: {e.message}")
            return

        try:
            results = await self._deliver_all(record, recipients)
            succeeded = [r for r in results if r.status == DeliveryStatus.SUCCEEDED]
            failed = [r for r in results if r.status != DeliveryStatus.SUCCEEDED]

            outcome = advance_after_fire(
                record.schedule,
                record.occurrence_count,
                record.occurrence_at,
                fired_at,
                delivered=bool(succeeded),
                previous_sent_at=record.sent_at,
            )
            recorded = await loop.run_in_executor(
                None, self._record_firing, record, claim_token, results, outcome, fired_at
            )
        except Exception as e:
            log.exception(f"Dispatch failed after claim, releasing: {e}")
            await loop.run_in_executor(None, self._release, record.id, claim_token, str(e))
            report.released += 1
            raise

        if not recorded:
            log.warning(
                "Claim was lost before the occurrence could be recorded; "
                "another worker owns this record now"
            )
            return

        report.fired += 1
        report.deliveries_succeeded += len(succeeded)
        report.deliveries_failed += len(failed)
        report.failures.extend(
            DeliveryFailure(
                notification_id=record.id,
                user_id=r.user_id,
                channel=r.channel,
                error=r.error or r.status.value,
            )
            for r in failed
        )

        for r in failed:
            log.warning(f"Delivery to user {r.user_id} via {r.channel} {r.status.value}: {r.error}")

        log.info(
            f"Fired occurrence {outcome.occurrence_count} of '{record.name}' to {len(results)} "
            f"deliveries ({len(succeeded)} succeeded); now {outcome.status.value}"
        )

    async def _deliver_all(
        self, record: _ClaimedRecord, recipients: List[ResolvedRecipient]
    ) -> List[_DeliveryResult]:
        semaphore = asyncio.Semaphore(self.delivery_concurrency)
        adapters = {
            channel: self.adapters.create_adapter(channel, self.session_factory)
            for channel in record.channels
        }

        async def deliver(user_id: str, channel: str) -> _DeliveryResult:
            async with semaphore:
                return await self._deliver_one(record, adapters.get(channel), user_id, channel)

        return list(
            await asyncio.gather(
                *(
                    deliver(recipient.user_id, channel)
                    for recipient in recipients
                    for channel in sorted(recipient.channels)
                )
            )
        )

    async def _deliver_one(self, record: _ClaimedRecord, adapter, user_id: str, channel: str) -> _DeliveryResult:
        if adapter is None:
            return _DeliveryResult(
                user_id=user_id,
                channel=channel,
                status=DeliveryStatus.FAILED,
                error=f"No adapter registered for channel {channel}",
            )

        try:
            delivered = await asyncio.wait_for(
                adapter.send(user_id, record.notification_type, record.payload),
                timeout=self.delivery_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return _DeliveryResult(
                user_id=user_id,
                channel=channel,
                status=DeliveryStatus.TIMED_OUT,
                error=f"Delivery timed out after {self.delivery_timeout_seconds}s",
            )
        except Exception as e:
            return _DeliveryResult(
                user_id=user_id,
                channel=channel,
                status=DeliveryStatus.FAILED,
                error=str(e) or e.__class__.__name__,
            )

        if delivered:
            return _DeliveryResult(user_id=user_id, channel=channel, status=DeliveryStatus.SUCCEEDED)

        return _DeliveryResult(
            user_id=user_id,
            channel=channel,
            status=DeliveryStatus.FAILED,
            error="Channel adapter reported failure",
        )
