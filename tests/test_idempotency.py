import pytest

from fieldqueue.v1.infra.jobs.idempotency import (
    DatabaseRunStore,
    InMemoryRunStore,
    compute_job_id,
)
from fieldqueue.v1.infra.jobs.schemas import JobPayload, JobResult, QueuedJob
from tests.conftest import run_rows


def test_job_id_is_deterministic():
    payload = JobPayload(org_id="org-1", type="sendInvoiceReminder", data={"a": 1})

    assert compute_job_id(payload) == compute_job_id(payload.model_copy())
    assert len(compute_job_id(payload)) == 64


def test_job_id_ignores_key_order():
    first = JobPayload(org_id="org-1", type="t", data={"a": 1, "b": {"x": 1, "y": 2}})
    second = JobPayload(org_id="org-1", type="t", data={"b": {"y": 2, "x": 1}, "a": 1})

    assert compute_job_id(first) == compute_job_id(second)


def test_job_id_treats_missing_data_as_empty():
    assert compute_job_id(
        JobPayload.model_validate({"orgId": "org-1", "type": "t", "data": None})
    ) == compute_job_id(JobPayload(org_id="org-1", type="t", data={}))


@pytest.mark.parametrize(
    "other",
    [
        JobPayload(org_id="org-2", type="t", data={"a": 1}),
        JobPayload(org_id="org-1", type="u", data={"a": 1}),
        JobPayload(org_id="org-1", type="t", data={"a": 2}),
    ],
)
def test_job_id_changes_with_content(other):
    base = JobPayload(org_id="org-1", type="t", data={"a": 1})

    assert compute_job_id(base) != compute_job_id(other)


def test_job_id_ignores_queue_identity():
    """Redelivery through another row collapses onto the same job id."""
    first = QueuedJob(id=1, attempts=1, org_id="org-1", type="t", data={})
    second = QueuedJob(id=2, attempts=3, org_id="org-1", type="t", data={})

    assert compute_job_id(first.as_payload()) == compute_job_id(second.as_payload())


class TestDatabaseRunStore:
    async def test_unknown_job_has_not_run(self, run_store: DatabaseRunStore):
        assert await run_store.has_run_before("missing") is False

    async def test_mark_run_records_result(self, run_store, database):
        await run_store.mark_run(
            "job-1", "org-1", JobResult(success=True, data={"sent": True})
        )

        assert await run_store.has_run_before("job-1") is True
        rows = await run_rows(database)
        assert len(rows) == 1
        assert rows[0].org_id == "org-1"
        assert rows[0].result == {
            "success": True,
            "error": None,
            "data": {"sent": True},
        }

    async def test_second_mark_run_keeps_first_entry(self, run_store, database):
        await run_store.mark_run("job-1", "org-1", JobResult(success=False, error="a"))
        await run_store.mark_run("job-1", "org-1", JobResult(success=True))

        rows = await run_rows(database)
        assert len(rows) == 1
        assert rows[0].result["error"] == "a"


class TestInMemoryRunStore:
    async def test_mark_and_check(self):
        store = InMemoryRunStore()

        assert await store.has_run_before("job-1") is False
        await store.mark_run("job-1", "org-1", JobResult(success=True))
        assert await store.has_run_before("job-1") is True

    async def test_first_result_wins(self):
        store = InMemoryRunStore()

        await store.mark_run("job-1", "org-1", JobResult(success=False, error="a"))
        await store.mark_run("job-1", "org-1", JobResult(success=True))

        assert store.runs["job-1"][1].error == "a"
