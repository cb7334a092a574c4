"""Time-block scheduling with APScheduler."""

from datetime import timedelta

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from flowrunner.models.database import TimeBlock
from flowrunner.services.execution.models import TimeBlockStatus, utcnow
from flowrunner.services.queue.jobs import JobState, QueueName
from flowrunner.services.scheduler import TimeBlockScheduler


def block(**fields):
    values = {"id": "tb-1", "user_id": "user-1", "workflow_id": "wf-1",
              "run_at": utcnow() + timedelta(hours=1)}
    values.update(fields)
    return TimeBlock(**values)


@pytest.fixture
async def scheduler(job_queue, database):
    service = TimeBlockScheduler(job_queue, database)
    yield service
    service.shutdown()


@pytest.mark.parametrize("fields,trigger_type", [
    ({}, DateTrigger),
    ({"recurrence_type": "INTERVAL", "interval_seconds": 60}, IntervalTrigger),
    ({"recurrence_type": "CRON", "cron_expression": "*/5 * * * *"}, CronTrigger),
])
def test_trigger_follows_recurrence(fields, trigger_type):
    assert isinstance(TimeBlockScheduler._build_trigger(block(**fields)), trigger_type)


@pytest.mark.parametrize("fields", [
    {"recurrence_type": "INTERVAL", "interval_seconds": 0},
    {"recurrence_type": "CRON", "cron_expression": "* * *"},
    {"recurrence_type": "CRON"},
])
def test_invalid_recurrence_raises(fields):
    with pytest.raises(ValueError):
        TimeBlockScheduler._build_trigger(block(**fields))


async def test_schedule_and_cancel(scheduler):
    await scheduler.start()

    job_id = scheduler.schedule(block())

    assert job_id == "timeblock:tb-1"
    assert scheduler.get_job_info("tb-1")["id"] == job_id
    assert [job["id"] for job in scheduler.get_all_jobs()] == [job_id]
    assert scheduler.cancel("tb-1")
    assert not scheduler.cancel("tb-1")
    assert scheduler.get_job_info("tb-1") is None


async def test_start_reschedules_active_blocks(scheduler, database, save_workflow):
    workflow_id = await save_workflow([], [])
    await database.save_time_block(block(id="tb-a", workflow_id=workflow_id))
    await database.save_time_block(block(id="tb-b", workflow_id=workflow_id,
                                         status=TimeBlockStatus.PAUSED.value))

    assert await scheduler.start() == 1
    assert scheduler.running
    assert scheduler.get_job_info("tb-a") is not None
    assert scheduler.get_job_info("tb-b") is None


async def test_fire_enqueues_trigger_job(scheduler, job_queue):
    await scheduler._fire("tb-1", "wf-1", "user-1")
    await scheduler._fire("tb-1", "wf-1", "user-1")

    job = await job_queue.claim(QueueName.WORKFLOW_TRIGGER)
    assert job.id.startswith("timeblock:tb-1:")
    assert job.state == JobState.ACTIVE
    assert job.payload["time_block_id"] == "tb-1"
    assert job.payload["triggered_by"] == "TIME_BLOCK"
