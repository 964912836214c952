import structlog
from fastapi import APIRouter, Request
from web3 import Web3

from ..errors import ApiError
from ..jobs import AddToBlocklistBatchJob, AddToBlocklistJob, RemoveFromBlocklistJob
from ..schemas import BlocklistBatchRequest
from .jobs import enqueue_job, get_services

logger = structlog.stdlib.get_logger(__name__)

router = APIRouter()


@router.post("/blocklist/add")
async def add_to_blocklist(job: AddToBlocklistJob, request: Request):
    logger.warning("enqueue_block_address", address=job.address, reason=job.reason)
    return await enqueue_job(
        get_services(request),
        job,
        "Blocklist update failed",
        echo={"address": job.address, "reason": job.reason},
    )


@router.post("/blocklist/add-batch")
async def add_to_blocklist_batch(body: BlocklistBatchRequest, request: Request):
    job = AddToBlocklistBatchJob(
        addresses=[entry.address for entry in body.entries],
        reasons=[entry.reason for entry in body.entries],
    )
    logger.warning("enqueue_block_address_batch", count=len(job.addresses))
    return await enqueue_job(
        get_services(request), job, "Blocklist batch failed", echo={"blockedCount": len(job.addresses)}
    )


@router.post("/blocklist/remove")
async def remove_from_blocklist(job: RemoveFromBlocklistJob, request: Request):
    logger.info("enqueue_unblock_address", address=job.address)
    return await enqueue_job(
        get_services(request), job, "Blocklist removal failed", echo={"address": job.address}
    )


@router.get("/blocklist/{address}")
async def get_block_status(address: str, request: Request):
    if not Web3.is_address(address):
        raise ApiError(400, "Invalid address", "Provide a valid wallet address to query")
    normalized = Web3.to_checksum_address(address)
    try:
        is_blocked, reason = await get_services(request).chain.call("getBlockStatus", (normalized,))
    except Exception as exc:
        logger.error("block_status_failed", address=normalized, error=str(exc))
        raise ApiError(500, "Unable to fetch block status", str(exc), code="BLOCK_STATUS_FAILED")
    return {"success": True, "address": normalized, "isBlocked": is_blocked, "reason": reason}
