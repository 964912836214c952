import pytest

from relayer.errors import SubmissionError
from relayer.jobs import ExecuteRefundJob, PauseContractJob
from relayer.monitor import CRITICAL, HEALTHY, WARNING, MonitorCounters, compute_health
from relayer.queue import QueueCounts, QueueEvent
from relayer.services import build_services
from relayer.tx_queue import enqueue_transaction

IDLE = QueueCounts()


def test_failure_rate_of_exactly_ten_percent_is_healthy():
    main = QueueCounts(completed=20, failed=2)
    retry = QueueCounts(completed=7, failed=1)
    health, warnings, rate, _ = compute_health(main, retry, stalled=0)
    assert rate == pytest.approx(10.0)
    assert health == HEALTHY
    assert warnings == []


def test_failure_rate_just_above_ten_percent_warns():
    main = QueueCounts(completed=8999, failed=1001)
    health, warnings, rate, _ = compute_health(main, IDLE, stalled=0)
    assert rate == pytest.approx(10.01)
    assert health == WARNING
    assert warnings == ["High failure rate: 10.01%"]


def test_no_finished_jobs_means_zero_failure_rate():
    assert compute_health(IDLE, IDLE, stalled=0) == (HEALTHY, [], 0.0, 0)


def test_backlog_boundary():
    at_limit = compute_health(QueueCounts(delayed=50, active=1), QueueCounts(waiting=30, delayed=20), stalled=0)
    assert at_limit[0] == HEALTHY
    assert at_limit[3] == 100

    over = compute_health(QueueCounts(delayed=51, active=1), QueueCounts(waiting=30, delayed=20), stalled=0)
    assert over[0] == WARNING
    assert over[1] == ["Large backlog: 101 jobs waiting"]


def test_stall_count_boundary():
    assert compute_health(IDLE, IDLE, stalled=5)[0] == HEALTHY
    health, warnings, _, _ = compute_health(IDLE, IDLE, stalled=6)
    assert health == CRITICAL
    assert warnings == ["High stall count: 6 jobs stalled"]


def test_waiting_without_active_is_critical():
    health, warnings, _, _ = compute_health(QueueCounts(waiting=1), IDLE, stalled=0)
    assert health == CRITICAL
    assert warnings == ["Worker may be stuck - jobs waiting but none active"]


def test_critical_is_not_downgraded_by_later_warnings():
    main = QueueCounts(waiting=150, completed=1, failed=1)
    health, warnings, _, _ = compute_health(main, IDLE, stalled=10)
    assert health == CRITICAL
    assert len(warnings) == 4


@pytest.mark.asyncio
async def test_snapshot_shape(services):
    await enqueue_transaction(services.queues, PauseContractJob())
    snapshot = await services.monitor.snapshot()

    assert snapshot["success"] is True
    assert snapshot["health"] == CRITICAL
    assert snapshot["warnings"] == ["Worker may be stuck - jobs waiting but none active"]
    assert snapshot["queues"]["main"] == {
        "name": "relayer-tx-main",
        "waiting": 1,
        "active": 0,
        "completed": 0,
        "failed": 0,
        "delayed": 0,
    }
    assert snapshot["queues"]["retry"]["name"] == "relayer-tx-retry"
    assert snapshot["metrics"]["failureRate"] == "0.00%"
    assert snapshot["metrics"]["backlogSize"] == 1
    assert snapshot["metrics"]["lastFailure"] is None
    assert snapshot["timestamp"].endswith("Z")


@pytest.mark.asyncio
async def test_healthy_snapshot_omits_warnings(services):
    snapshot = await services.monitor.snapshot()
    assert snapshot["health"] == HEALTHY
    assert "warnings" not in snapshot


@pytest.mark.asyncio
async def test_hand_off_is_counted_apart_from_completion(services):
    monitor = services.monitor
    main = services.queues.main.name
    await monitor.handle_event(QueueEvent(kind="completed", queue=main, result={"success": True, "txHash": "0x1"}))
    await monitor.handle_event(
        QueueEvent(kind="completed", queue=main, result={"success": False, "movedToRetry": True, "error": "x"})
    )
    counters = await monitor.counters()
    assert counters.completed == 1
    assert counters.handed_off == 1

    await monitor.handle_event(QueueEvent(kind="stalled", queue=main))
    await monitor.handle_event(QueueEvent(kind="error", queue=main, error="redis down"))
    assert (await monitor.counters()).stalled == 1

    await monitor.reset()
    assert await monitor.counters() == MonitorCounters()


@pytest.mark.asyncio
async def test_main_failure_records_last_failure(services):
    monitor = services.monitor
    await monitor.handle_event(
        QueueEvent(kind="failed", queue=services.queues.main.name, error="stalled", final=True)
    )
    counters = await monitor.counters()
    assert counters.failed == 1
    assert counters.last_failure["jobId"] == "unknown"
    assert counters.last_failure["error"] == "stalled"


@pytest.mark.asyncio
async def test_api_process_sees_what_a_separate_worker_observed(settings, redis_client, chain, clock):
    api = await build_services(settings, redis_client=redis_client, chain=chain, clock=clock)
    worker = await build_services(settings, redis_client=redis_client, chain=chain, clock=clock)
    api.start(run_worker=False)
    worker.start(run_worker=False)
    try:
        chain.failures["executeRefundBatch"] = SubmissionError("execution reverted", code="CALL_EXCEPTION")
        entry = await enqueue_transaction(api.queues, ExecuteRefundJob(raffle_id=4))

        await worker.worker.run_once(worker.queues.main, worker.worker.process_main_job)
        for _ in range(3):
            clock.advance(3600)
            await worker.worker.run_once(worker.queues.retry, worker.worker.process_retry_job)

        snapshot = await api.monitor.snapshot()
    finally:
        await worker.stop()
        await api.stop()

    metrics = snapshot["metrics"]
    assert metrics["totalHandedOff"] == 1
    assert metrics["totalExhausted"] == 1
    assert metrics["retryAttemptsFailed"] == 2
    assert metrics["lastFailure"]["jobId"] == f"retry-{entry.id}"
    assert "failed permanently after 3 attempts" in metrics["lastFailure"]["error"]
