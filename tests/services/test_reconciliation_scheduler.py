"""
Tests for the scheduled orphan cleanup job.
"""

import pytest

from services import reconciliation_scheduler
from services.reconciliation_scheduler import (
    ReconciliationScheduler, start_reconciliation_scheduler, stop_reconciliation_scheduler,
)


@pytest.fixture
def service(mocker):
    service = mocker.Mock()
    service.run_orphan_cleanup.return_value = {
        'orphaned_found': 1, 'orphaned_removed': 1, 'accounts_removed': 2,
        'stale_connections': [], 'errors': [],
    }
    return service


class TestReconciliationScheduler:

    @pytest.mark.asyncio
    async def test_run_cleanup_records_last_result(self, service):
        scheduler = ReconciliationScheduler(service=service, interval_hours=6)

        result = await scheduler.run_cleanup()

        service.run_orphan_cleanup.assert_called_once_with()
        assert result['orphaned_removed'] == 1
        assert 'started_at' in result
        assert scheduler.get_status()['last_result'] is result

    @pytest.mark.asyncio
    async def test_failed_run_propagates(self, service):
        service.run_orphan_cleanup.side_effect = RuntimeError("database unavailable")
        scheduler = ReconciliationScheduler(service=service)

        with pytest.raises(RuntimeError):
            await scheduler.run_cleanup()
        assert scheduler.last_result is None

    @pytest.mark.asyncio
    async def test_start_and_stop(self, service):
        scheduler = ReconciliationScheduler(service=service, interval_hours=12)
        scheduler.start()
        try:
            status = scheduler.get_status()
            assert status['is_running'] is True
            assert [job['id'] for job in status['jobs']] == ['orphaned_connection_cleanup']
            assert status['config'] == {'interval_hours': 12}

            # second start is a no-op
            scheduler.start()
            assert len(scheduler.scheduler.get_jobs()) == 1
        finally:
            scheduler.stop()

        assert scheduler.get_status() == {
            'is_running': False, 'jobs': [], 'config': {'interval_hours': 12}, 'last_result': None,
        }
        service.run_orphan_cleanup.assert_not_called()


class TestGlobalScheduler:

    @pytest.mark.asyncio
    async def test_start_and_stop_global_instance(self, mocker, service):
        scheduler = ReconciliationScheduler(service=service)
        mocker.patch.object(reconciliation_scheduler, '_scheduler', scheduler)
        start = mocker.spy(scheduler, 'start')
        stop = mocker.spy(scheduler, 'stop')

        assert start_reconciliation_scheduler() is scheduler
        start.assert_called_once_with()

        stop_reconciliation_scheduler()
        stop.assert_called_once_with()
        assert reconciliation_scheduler._scheduler is None
