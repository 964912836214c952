from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt, field_validator
from pydantic.alias_generators import to_camel

from .jobs import MAX_BLOCKLIST_BATCH, checksum_address, clean_reason


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BlocklistEntry(_CamelModel):
    address: str
    reason: str

    check_address = field_validator("address", mode="before")(checksum_address)
    check_reason = field_validator("reason", mode="before")(clean_reason)


class BlocklistBatchRequest(_CamelModel):
    entries: List[BlocklistEntry] = Field(min_length=1, max_length=MAX_BLOCKLIST_BATCH)


class ScanRafflesRequest(_CamelModel):
    start_id: NonNegativeInt
    end_id: NonNegativeInt


class HealthResponse(_CamelModel):
    success: bool = True
    status: str
    timestamp: str
    signer: str
    redis: bool


class JobStatusResponse(_CamelModel):
    success: bool = True
    job_id: str
    job: Optional[Dict[str, Any]] = None
    retry: Optional[Dict[str, Any]] = None
