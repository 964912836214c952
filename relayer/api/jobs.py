from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Request

from .. import metrics
from ..errors import ApiError
from ..schemas import JobStatusResponse
from ..services import RelayerServices
from ..tx_queue import enqueue_transaction, retry_job_id

logger = structlog.stdlib.get_logger(__name__)

router = APIRouter()

QUEUED_MESSAGE = "Transaction queued - worker will process"


def get_services(request: Request) -> RelayerServices:
    return request.app.state.services


async def enqueue_job(
    services: RelayerServices,
    job,
    failure: str,
    echo: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Admit ``job`` to the main queue and build the 200 body. Never waits for the chain."""
    try:
        entry = await enqueue_transaction(services.queues, job)
    except Exception as exc:
        logger.exception("enqueue_failed", type=job.type)
        metrics.error_count.labels(source="api").inc()
        raise ApiError(500, failure, str(exc) or type(exc).__name__)
    metrics.jobs_submitted_total.labels(type=job.type).inc()
    return {"success": True, "jobId": entry.id, **(echo or {}), "message": QUEUED_MESSAGE}


@router.get("/relayer/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job(job_id: str, request: Request):
    """State of a main-queue entry and of its retry counterpart, if any."""
    queues = get_services(request).queues
    entry = await queues.main.get(job_id)
    retry = await queues.retry.get(retry_job_id(job_id))
    if entry is None and retry is None:
        raise ApiError(404, "Not found", f"job {job_id} not found")
    return JobStatusResponse(
        job_id=job_id,
        job=entry.public() if entry is not None else None,
        retry=retry.public() if retry is not None else None,
    )
