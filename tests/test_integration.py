import re

import pytest

from relayer.errors import SubmissionError

CREATE_RAFFLE = {
    "referenceId": "1",
    "templateId": "42",
    "ticketPrice": "1.0",
    "maxTickets": 100,
    "minTickets": 5,
    "durationSeconds": 86400,
}


def get_counter(text: str, name: str, labels: str) -> float:
    m = re.search(rf"^{name}\{{{labels}\}}\s+(\d+\.?\d*)", text, re.M)
    return float(m.group(1)) if m else 0.0


async def run_main(services):
    return await services.worker.run_once(services.queues.main, services.worker.process_main_job)


@pytest.mark.asyncio
async def test_create_raffle_end_to_end(client, services, chain, api_headers):
    """Queue a create-raffle over HTTP, let the worker take it, and poll the job status."""
    before = (await client.get("/metrics")).text

    res = await client.post("/create-raffle", json=CREATE_RAFFLE, headers=api_headers)
    assert res.status_code == 200
    body = res.json()
    assert body == {
        "success": True,
        "jobId": "1",
        "referenceId": "1",
        "message": "Transaction queued - worker will process",
    }

    status = await client.get(f"/relayer/jobs/{body['jobId']}", headers=api_headers)
    assert status.json()["job"]["status"] == "waiting"

    assert await run_main(services) is True

    status = await client.get(f"/relayer/jobs/{body['jobId']}", headers=api_headers)
    job = status.json()["job"]
    assert job["status"] == "completed"
    assert job["result"]["txHash"] == chain.sent[0].hash
    assert job["result"]["referenceId"] == "1"
    assert status.json()["retry"] is None
    assert chain.sent[0].function == "createRaffle"
    assert chain.sent[0].args == (42, 1, 10**18, 100, 5, 86400)

    after = (await client.get("/metrics")).text
    labels = 'queue="relayer-tx-main",type="create-raffle"'
    assert get_counter(after, "relayer_jobs_executed_total", labels) >= get_counter(
        before, "relayer_jobs_executed_total", labels
    ) + 1


@pytest.mark.asyncio
async def test_failing_refund_lands_in_retry_queue(client, services, chain, clock, api_headers):
    chain.failures["executeRefundBatch"] = SubmissionError("execution reverted", code="CALL_EXCEPTION")

    res = await client.post("/execute-refund", json={"raffleId": 7}, headers=api_headers)
    assert res.status_code == 200
    job_id = res.json()["jobId"]
    assert res.json()["raffleId"] == "7"

    await run_main(services)

    status = (await client.get(f"/relayer/jobs/{job_id}", headers=api_headers)).json()
    assert status["job"]["status"] == "completed"
    assert status["job"]["result"]["movedToRetry"] is True
    retry = status["retry"]
    assert retry["id"] == f"retry-{job_id}"
    assert retry["status"] == "delayed"
    assert retry["eligibleAt"] - clock.now == 5.0

    snapshot = (await client.get("/relayer/queue/status", headers=api_headers)).json()
    assert snapshot["queues"]["retry"]["delayed"] == 1
    assert snapshot["queues"]["main"]["failed"] == 0
    assert snapshot["metrics"]["totalHandedOff"] == 1
    assert snapshot["health"] == "healthy"
