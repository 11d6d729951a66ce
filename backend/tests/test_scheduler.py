"""Tests for the periodic sourcing job."""
from tendersniper.agents import scheduler
from tendersniper.models.schemas import BatchStats


class StubAgent:
    def __init__(self, fail=False):
        self.fail = fail

    async def run(self):
        if self.fail:
            raise RuntimeError("boom")
        return BatchStats(clients=2, matched=1)


class TestSourcingJob:
    async def test_result_recorded(self):
        result = await scheduler.run_sourcing_job(lambda: StubAgent())
        assert result["clients"] == 2
        assert scheduler.get_last_result() == result

    async def test_failure_logged_not_raised(self):
        scheduler.record_result({"clients": 0})
        assert await scheduler.run_sourcing_job(lambda: StubAgent(fail=True)) is None
        assert scheduler.get_last_result() == {"clients": 0}


class TestScheduler:
    async def test_start_and_stop(self):
        started = scheduler.start_scheduler(lambda: StubAgent())
        try:
            job = started.get_job(scheduler.JOB_ID)
            assert job is not None
            assert job.max_instances == 1
            assert scheduler.get_scheduler() is started
        finally:
            scheduler.stop_scheduler()
        assert scheduler.get_scheduler() is None
