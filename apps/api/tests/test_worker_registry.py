import pytest

from crm_api.db.enums import JobType


@pytest.mark.parametrize("job_type", list(JobType))
def test_job_registry_resolves_every_job_type(job_type):
    from crm_api.jobs.registry import resolve_job_handler

    handler = resolve_job_handler(job_type.value)
    assert callable(handler)


def test_job_registry_unknown_raises():
    from crm_api.jobs.registry import resolve_job_handler

    with pytest.raises(ValueError):
        resolve_job_handler("nope")


def test_dead_letter_handlers_only_for_stateful_jobs():
    from crm_api.jobs.registry import resolve_dead_letter_handler

    assert resolve_dead_letter_handler(JobType.ENCRYPT_TOKEN.value) is not None
    assert resolve_dead_letter_handler(JobType.START_SYNC.value) is not None
    assert resolve_dead_letter_handler(JobType.WEBHOOK_RENEWAL.value) is not None
    assert resolve_dead_letter_handler(JobType.HEALTH_PROBE.value) is None
    assert resolve_dead_letter_handler(JobType.REFRESH_TOKEN.value) is None


@pytest.mark.asyncio
async def test_process_job_uses_registry(monkeypatch):
    from crm_api import worker

    calls: dict[str, str] = {}

    async def stub_handler(_db, job):
        calls["job_type"] = job.job_type

    def stub_resolver(job_type: str):
        calls["resolved"] = job_type
        return stub_handler

    monkeypatch.setattr(worker, "resolve_job_handler", stub_resolver)

    job = type(
        "Job",
        (),
        {
            "id": "job-id",
            "job_type": JobType.START_SYNC.value,
            "attempts": 0,
            "payload": {},
            "organization_id": None,
        },
    )()

    await worker.process_job(None, job)

    assert calls["resolved"] == JobType.START_SYNC.value
    assert calls["job_type"] == JobType.START_SYNC.value
