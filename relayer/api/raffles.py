import structlog
from fastapi import APIRouter, Request

from ..jobs import CancelRaffleJob, CreateRaffleJob, ExecuteRaffleJob, ExecuteRefundJob
from .jobs import enqueue_job, get_services

logger = structlog.stdlib.get_logger(__name__)

router = APIRouter()


@router.post("/create-raffle")
async def create_raffle(job: CreateRaffleJob, request: Request):
    logger.info(
        "enqueue_create_raffle",
        referenceId=job.reference_id,
        templateId=job.template_id,
        ticketPrice=job.ticket_price,
        maxTickets=job.max_tickets,
        minTickets=job.min_tickets,
        durationSeconds=job.duration_seconds,
    )
    return await enqueue_job(
        get_services(request), job, "Transaction failed", echo={"referenceId": job.reference_id}
    )


@router.post("/execute-raffle")
async def execute_raffle(job: ExecuteRaffleJob, request: Request):
    logger.info("enqueue_execute_raffle", raffleId=job.raffle_id)
    return await enqueue_job(
        get_services(request), job, "Execute raffle failed", echo={"raffleId": str(job.raffle_id)}
    )


@router.post("/cancel-raffle")
async def cancel_raffle(job: CancelRaffleJob, request: Request):
    logger.info("enqueue_cancel_raffle", raffleId=job.raffle_id)
    return await enqueue_job(
        get_services(request), job, "Cancel raffle failed", echo={"raffleId": str(job.raffle_id)}
    )


@router.post("/execute-refund")
async def execute_refund(job: ExecuteRefundJob, request: Request):
    logger.info("enqueue_execute_refund", raffleId=job.raffle_id)
    return await enqueue_job(
        get_services(request), job, "Refund failed", echo={"raffleId": str(job.raffle_id)}
    )
