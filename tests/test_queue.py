import asyncio
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import text, update
from sqlalchemy.exc import OperationalError

from fieldqueue.config.settings import DeliveryMode
from fieldqueue.infra.database import Database
from fieldqueue.v1.core.exceptions import InvalidJobPayloadError
from fieldqueue.v1.infra.jobs.models import JobQueueRow
from fieldqueue.v1.infra.jobs.queue import JobQueue
from fieldqueue.v1.infra.jobs.schemas import (
    JobPayload,
    JobQueueConfig,
    RetryDisposition,
)
from tests.conftest import count_rows, queue_rows
from tests.doubles import RecordingNotifier


def invoice_job(invoice_id: str = "inv-1", org_id: str = "org-1") -> JobPayload:
    return JobPayload(
        org_id=org_id, type="sendInvoiceReminder", data={"invoiceId": invoice_id}
    )


async def expire_lock(database, row_id: int, lease_s: int) -> None:
    """Backdate a claim past its lease, as if its executor had gone away."""
    stale = datetime.now(UTC) - timedelta(seconds=lease_s + 60)
    async with database.SessionLocal() as session:
        await session.execute(
            update(JobQueueRow).where(JobQueueRow.id == row_id).values(locked_at=stale)
        )
        await session.commit()


class ExplodingNotifier:
    """Notifier failing with something other than a dispatch error."""

    async def dispatch(self, payload: JobPayload) -> None:
        raise RuntimeError("notifier misconfigured")


class BrokenSession:
    """Session whose every statement fails like an unreachable database."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def execute(self, statement):
        raise OperationalError("UPDATE job_queue", {}, Exception("database is locked"))


class TestEnqueue:
    async def test_enqueue_inserts_unlocked_row(self, queue, database):
        row_id = await queue.enqueue(invoice_job())

        rows = await queue_rows(database)
        assert len(rows) == 1
        assert rows[0].id == row_id
        assert rows[0].org_id == "org-1"
        assert rows[0].type == "sendInvoiceReminder"
        assert rows[0].data == {"invoiceId": "inv-1"}
        assert rows[0].attempts == 0
        assert rows[0].locked_at is None

    async def test_enqueue_accepts_camel_case_dict(self, queue, database):
        row_id = await queue.enqueue(
            {"orgId": "org-2", "type": "runScheduledReports", "data": None}
        )

        assert row_id is not None
        rows = await queue_rows(database)
        assert rows[0].org_id == "org-2"
        assert rows[0].data == {}

    @pytest.mark.parametrize("org_id", ["", "   ", None])
    async def test_enqueue_rejects_missing_org(self, queue, database, org_id):
        with pytest.raises(InvalidJobPayloadError, match="org_id is required"):
            await queue.enqueue({"orgId": org_id, "type": "sendInvoiceReminder"})

        assert await count_rows(database, JobQueueRow) == 0

    async def test_enqueue_rejection_is_422(self, queue):
        with pytest.raises(InvalidJobPayloadError) as exc_info:
            await queue.enqueue(invoice_job(org_id=""))

        assert exc_info.value.status_code == 422
        assert exc_info.value.details == {"type": "sendInvoiceReminder"}


    async def test_insert_without_data_or_timestamp_uses_column_defaults(
        self, database
    ):
        async with database.SessionLocal() as session:
            await session.execute(
                text(
                    "INSERT INTO job_queue (org_id, type) "
                    "VALUES ('org-1', 'runScheduledReports')"
                )
            )
            await session.commit()

        rows = await queue_rows(database)
        assert rows[0].data == {}
        assert rows[0].attempts == 0
        assert rows[0].created_at is not None


class TestDequeue:
    async def test_dequeue_empty_queue_returns_none(self, queue):
        assert await queue.dequeue() is None

    async def test_dequeue_claims_oldest_first(self, queue):
        first = await queue.enqueue(invoice_job("inv-1"))
        second = await queue.enqueue(invoice_job("inv-2"))

        job_a = await queue.dequeue()
        job_b = await queue.dequeue()

        assert job_a.id == first
        assert job_a.data == {"invoiceId": "inv-1"}
        assert job_b.id == second
        assert await queue.dequeue() is None

    async def test_dequeue_locks_and_counts_attempt(self, queue, database):
        await queue.enqueue(invoice_job())

        job = await queue.dequeue()

        assert job.attempts == 1
        rows = await queue_rows(database)
        assert rows[0].locked_at is not None
        assert rows[0].attempts == 1

    async def test_claimed_row_is_not_handed_out_twice(self, queue):
        await queue.enqueue(invoice_job())

        assert await queue.dequeue() is not None
        assert await queue.dequeue() is None

    async def test_storage_error_reported_as_no_work(self, queue):
        queue.database = SimpleNamespace(SessionLocal=BrokenSession)

        assert await queue.dequeue() is None


class TestLockLease:
    async def test_expired_lock_is_reclaimed(self, queue, database):
        row_id = await queue.enqueue(invoice_job())
        await queue.dequeue()
        await expire_lock(database, row_id, queue.config.lock_lease_s)

        job = await queue.dequeue()
        assert job.id == row_id
        assert job.attempts == 2

    async def test_lock_held_forever_without_lease(self, queue_config, database):
        queue = JobQueue(
            queue_config.model_copy(update={"lock_lease_s": None}), database=database
        )
        row_id = await queue.enqueue(invoice_job())
        await queue.dequeue()

        async with database.SessionLocal() as session:
            await session.execute(
                update(JobQueueRow)
                .where(JobQueueRow.id == row_id)
                .values(locked_at=datetime.now(UTC) - timedelta(days=30))
            )
            await session.commit()

        assert await queue.dequeue() is None

    async def test_expired_claim_cannot_settle_reclaimed_row(self, queue, database):
        row_id = await queue.enqueue(invoice_job())
        first = await queue.dequeue()
        await expire_lock(database, row_id, queue.config.lock_lease_s)
        second = await queue.dequeue()
        assert second.id == row_id
        assert second.locked_at != first.locked_at

        await queue.mark_complete(first.id, claimed_at=first.locked_at)
        late = await queue.mark_failed(first.id, "late", claimed_at=first.locked_at)
        late_permanent = await queue.mark_failed(
            first.id, "late", permanent=True, claimed_at=first.locked_at
        )

        assert late == RetryDisposition.MISSING
        assert late_permanent == RetryDisposition.MISSING
        rows = await queue_rows(database)
        assert len(rows) == 1
        assert rows[0].locked_at is not None
        assert await queue.dequeue() is None

        await queue.mark_complete(second.id, claimed_at=second.locked_at)
        assert await count_rows(database, JobQueueRow) == 0

    async def test_current_claim_requeues(self, queue, database):
        await queue.enqueue(invoice_job())
        job = await queue.dequeue()

        disposition = await queue.mark_failed(
            job.id, "smtp timeout", claimed_at=job.locked_at
        )

        assert disposition == RetryDisposition.REQUEUED
        assert (await queue_rows(database))[0].locked_at is None

    def test_lease_must_outlive_handler_timeout(self):
        with pytest.raises(ValueError, match="greater than handler_timeout_s"):
            JobQueueConfig(lock_lease_s=1, handler_timeout_s=300)
        with pytest.raises(ValueError, match="greater than handler_timeout_s"):
            JobQueueConfig(lock_lease_s=300, handler_timeout_s=300)

    def test_lease_requires_handler_timeout(self):
        with pytest.raises(ValueError, match="greater than handler_timeout_s"):
            JobQueueConfig(lock_lease_s=900, handler_timeout_s=None)

    def test_no_lease_allows_any_handler_timeout(self):
        config = JobQueueConfig(lock_lease_s=None, handler_timeout_s=None)
        assert config.lock_lease_s is None


class TestMarkComplete:
    async def test_mark_complete_deletes_row(self, queue, database):
        await queue.enqueue(invoice_job())
        job = await queue.dequeue()

        await queue.mark_complete(job.id)

        assert await count_rows(database, JobQueueRow) == 0

    async def test_mark_complete_is_idempotent(self, queue, database):
        await queue.enqueue(invoice_job())
        job = await queue.dequeue()

        await queue.mark_complete(job.id)
        await queue.mark_complete(job.id)
        await queue.mark_complete(None)

        assert await count_rows(database, JobQueueRow) == 0


class TestMarkFailed:
    async def test_failed_job_is_requeued_in_place(self, queue, database):
        await queue.enqueue(invoice_job())
        job = await queue.dequeue()
        created_at = (await queue_rows(database))[0].created_at

        disposition = await queue.mark_failed(job.id, "smtp timeout")

        assert disposition == RetryDisposition.REQUEUED
        rows = await queue_rows(database)
        assert rows[0].locked_at is None
        assert rows[0].attempts == 1
        assert rows[0].created_at == created_at

    async def test_requeued_job_keeps_its_fifo_position(self, queue):
        first = await queue.enqueue(invoice_job("inv-1"))
        await queue.enqueue(invoice_job("inv-2"))

        job = await queue.dequeue()
        await queue.mark_failed(job.id, "boom")

        retried = await queue.dequeue()
        assert retried.id == first
        assert retried.attempts == 2

    async def test_row_purged_after_max_attempts(self, queue, database):
        await queue.enqueue(invoice_job())
        max_attempts = queue.config.max_attempts

        dispositions = []
        for _ in range(max_attempts):
            job = await queue.dequeue()
            dispositions.append(await queue.mark_failed(job.id, "boom"))

        assert dispositions[:-1] == [RetryDisposition.REQUEUED] * (max_attempts - 1)
        assert dispositions[-1] == RetryDisposition.PURGED
        assert await count_rows(database, JobQueueRow) == 0
        assert await queue.dequeue() is None

    async def test_permanent_failure_discards_row(self, queue, database):
        await queue.enqueue(invoice_job())
        job = await queue.dequeue()

        first = await queue.mark_failed(job.id, "no handler", permanent=True)
        second = await queue.mark_failed(job.id, "no handler", permanent=True)

        assert first == RetryDisposition.DISCARDED
        assert second == RetryDisposition.MISSING
        assert await count_rows(database, JobQueueRow) == 0

    async def test_mark_failed_on_missing_row(self, queue):
        assert await queue.mark_failed(9999, "gone") == RetryDisposition.MISSING

    async def test_mark_failed_without_row_id(self, queue):
        assert await queue.mark_failed(None, "pushed") == RetryDisposition.NOT_QUEUED


class TestQueueDepth:
    async def test_depth_counts_pending_and_locked(self, queue):
        assert await queue.queue_depth() == {"pending": 0, "locked": 0}

        await queue.enqueue(invoice_job("inv-1"))
        await queue.enqueue(invoice_job("inv-2"))
        await queue.dequeue()

        assert await queue.queue_depth() == {"pending": 1, "locked": 1}

    async def test_expired_lock_counts_as_pending(self, queue, database):
        row_id = await queue.enqueue(invoice_job())
        await queue.dequeue()
        await expire_lock(database, row_id, queue.config.lock_lease_s)

        assert await queue.queue_depth() == {"pending": 1, "locked": 0}


class TestPushMode:
    @pytest.fixture
    def push_config(self) -> JobQueueConfig:
        return JobQueueConfig(delivery_mode=DeliveryMode.PUSH)

    async def test_push_enqueue_dispatches_once(self, push_config, database):
        notifier = RecordingNotifier()
        queue = JobQueue(push_config, notifier=notifier)

        result = await queue.enqueue(invoice_job())

        assert result is None
        assert len(notifier.dispatched) == 1
        assert notifier.dispatched[0].to_wire() == {
            "orgId": "org-1",
            "type": "sendInvoiceReminder",
            "data": {"invoiceId": "inv-1"},
        }
        assert await count_rows(database, JobQueueRow) == 0

    async def test_push_dispatch_failure_is_not_raised(self, push_config):
        notifier = RecordingNotifier(fail=True)
        queue = JobQueue(push_config, notifier=notifier)

        assert await queue.enqueue(invoice_job()) is None
        assert len(notifier.dispatched) == 1

    async def test_unexpected_notifier_error_is_not_raised(self, push_config):
        queue = JobQueue(push_config, notifier=ExplodingNotifier())

        assert await queue.enqueue(invoice_job()) is None

    async def test_push_validates_org_before_dispatch(self, push_config):
        notifier = RecordingNotifier()
        queue = JobQueue(push_config, notifier=notifier)

        with pytest.raises(InvalidJobPayloadError):
            await queue.enqueue(invoice_job(org_id=""))
        assert notifier.dispatched == []

    async def test_push_queue_has_no_rows(self, push_config):
        queue = JobQueue(push_config, notifier=RecordingNotifier())

        assert await queue.dequeue() is None
        assert await queue.queue_depth() == {"pending": 0, "locked": 0}
        assert await queue.mark_failed(1, "x") == RetryDisposition.NOT_QUEUED

    async def test_table_mode_never_notifies(self, queue_config, database):
        notifier = RecordingNotifier()
        queue = JobQueue(queue_config, database=database, notifier=notifier)

        await queue.enqueue(invoice_job())

        assert notifier.dispatched == []


class TestConcurrentClaims:
    @pytest.fixture
    async def file_database(self, test_settings, tmp_path):
        settings = test_settings.model_copy(
            update={"database_url": f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}"}
        )
        db = Database(settings)
        await db.create_all()
        yield db
        await db.close()

    async def test_concurrent_dequeues_claim_distinct_rows(
        self, queue_config, file_database
    ):
        queue = JobQueue(queue_config, database=file_database)
        enqueued = [await queue.enqueue(invoice_job(f"inv-{n}")) for n in range(5)]

        claims = await asyncio.gather(*(queue.dequeue() for _ in range(8)))
        claimed = [job.id for job in claims if job is not None]

        assert claimed
        assert len(claimed) == len(set(claimed))

        drained = []
        while (job := await queue.dequeue()) is not None:
            drained.append(job.id)

        assert sorted(claimed + drained) == sorted(enqueued)


class TestConstruction:
    def test_table_mode_requires_database(self, queue_config):
        with pytest.raises(ValueError, match="requires a database"):
            JobQueue(queue_config)

    def test_push_mode_requires_notifier(self):
        with pytest.raises(ValueError, match="requires a notifier"):
            JobQueue(JobQueueConfig(delivery_mode=DeliveryMode.PUSH))
