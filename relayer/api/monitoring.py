import structlog
from fastapi import APIRouter, Request

from ..errors import ApiError
from ..schemas import ScanRafflesRequest
from .jobs import get_services

logger = structlog.stdlib.get_logger(__name__)

router = APIRouter()


async def _read(request: Request, function: str, error_code: str, args=()):
    try:
        return await get_services(request).chain.call(function, args)
    except Exception as exc:
        logger.error("contract_read_failed", function=function, error=str(exc))
        raise ApiError(500, error_code, str(exc) or type(exc).__name__)


@router.get("/accounting-invariant")
async def accounting_invariant(request: Request):
    is_valid, contract_balance, reserved_funds, platform_fees = await _read(
        request, "checkAccountingInvariant", "ACCOUNTING_INVARIANT_FAILED"
    )
    return {
        "success": True,
        "data": {
            "isValid": is_valid,
            "contractBalance": str(contract_balance),
            "reservedFunds": str(reserved_funds),
            "platformFees": str(platform_fees),
        },
    }


@router.get("/token-decimals")
async def token_decimals(request: Request):
    decimals = await _read(request, "getTokenDecimals", "TOKEN_DECIMALS_FAILED")
    return {"success": True, "data": {"decimals": int(decimals)}}


@router.post("/scan-raffles")
async def scan_raffles(body: ScanRafflesRequest, request: Request):
    if body.end_id <= body.start_id:
        raise ApiError(400, "INVALID_RANGE", "endId must be greater than startId")
    ids, statuses = await _read(request, "scanRaffles", "SCAN_RAFFLES_FAILED", (body.start_id, body.end_id))
    return {
        "success": True,
        "data": {
            "ids": [str(raffle_id) for raffle_id in ids],
            "statuses": [int(status) for status in statuses],
        },
    }


@router.get("/relayer/queue/status")
async def queue_status(request: Request):
    try:
        return await get_services(request).monitor.snapshot()
    except Exception as exc:
        logger.exception("queue_status_failed")
        raise ApiError(500, "Failed to fetch queue status", str(exc) or type(exc).__name__)
