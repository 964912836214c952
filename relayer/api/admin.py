import structlog
from fastapi import APIRouter, Depends, Request

from ..auth import audit_sensitive_operation, check_admin_ip, sensitive_rate_limit
from ..jobs import (
    ArchiveRafflesJob,
    EmergencyPauseJob,
    EmergencyUnpauseJob,
    PauseContractJob,
    UnpauseContractJob,
    WithdrawFeesJob,
)
from .jobs import enqueue_job, get_services

logger = structlog.stdlib.get_logger(__name__)

router = APIRouter()


@router.post("/pause-system")
async def pause_system(request: Request):
    logger.info("enqueue_pause")
    return await enqueue_job(get_services(request), PauseContractJob(), "Pause failed")


@router.post("/unpause-system")
async def unpause_system(request: Request):
    logger.info("enqueue_unpause")
    return await enqueue_job(get_services(request), UnpauseContractJob(), "Unpause failed")


@router.post("/emergency-pause")
async def emergency_pause(request: Request):
    # security incident: the contract emits its emergency event on top of pausing
    logger.warning("enqueue_emergency_pause")
    return await enqueue_job(get_services(request), EmergencyPauseJob(), "Emergency pause failed")


@router.post("/emergency-unpause")
async def emergency_unpause(request: Request):
    logger.warning("enqueue_emergency_unpause")
    return await enqueue_job(get_services(request), EmergencyUnpauseJob(), "Emergency unpause failed")


@router.post(
    "/withdraw-fees",
    dependencies=[
        Depends(check_admin_ip),
        Depends(sensitive_rate_limit),
        Depends(audit_sensitive_operation("withdraw-fees")),
    ],
)
async def withdraw_fees(request: Request):
    return await enqueue_job(get_services(request), WithdrawFeesJob(), "Withdrawal failed")


@router.post(
    "/archive-raffles",
    dependencies=[
        Depends(check_admin_ip),
        Depends(sensitive_rate_limit),
        Depends(audit_sensitive_operation("archive-raffles")),
    ],
)
async def archive_raffles(job: ArchiveRafflesJob, request: Request):
    logger.info("enqueue_archive_raffles", count=len(job.raffle_ids), raffleIds=list(job.raffle_ids))
    return await enqueue_job(
        get_services(request),
        job,
        "Archive failed",
        echo={"count": len(job.raffle_ids), "raffleIds": list(job.raffle_ids)},
    )
