"""Transaction intents handled by the relayer.

Every job is a frozen pydantic model whose ``type`` literal selects the variant.
The queue stores ``job.to_payload()`` (camelCase JSON) and each delivery rebuilds
the model with :func:`parse_job`.
"""
import json
from decimal import Decimal, InvalidOperation
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field, PositiveInt, field_validator, model_validator
from pydantic.alias_generators import to_camel
from web3 import Web3

from .errors import JobValidationError

MAX_BLOCKLIST_BATCH = 100


def _integer_string(value: Any) -> Any:
    if isinstance(value, bool):
        raise ValueError("must be an integer")
    if isinstance(value, int):
        value = str(value)
    if isinstance(value, str):
        value = value.strip()
        if not value.isdigit():
            raise ValueError("must be a non-negative integer")
    return value


def checksum_address(value: Any) -> Any:
    if not isinstance(value, str) or not Web3.is_address(value):
        raise ValueError(f"invalid address: {value}")
    return Web3.to_checksum_address(value)


def clean_reason(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        if not value:
            raise ValueError("reason required")
    return value


class _JobBase(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class CreateRaffleJob(_JobBase):
    type: Literal["create-raffle"] = "create-raffle"
    reference_id: str
    template_id: str
    ticket_price: str
    max_tickets: PositiveInt
    min_tickets: PositiveInt
    duration_seconds: PositiveInt

    check_ids = field_validator("reference_id", "template_id", mode="before")(_integer_string)

    @field_validator("ticket_price", mode="before")
    @classmethod
    def check_ticket_price(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            value = str(value)
        if not isinstance(value, str):
            raise ValueError("ticketPrice must be a decimal string")
        value = value.strip()
        try:
            price = Decimal(value)
        except InvalidOperation:
            raise ValueError(f"invalid decimal amount: {value}")
        if not price.is_finite() or price <= 0:
            raise ValueError("ticketPrice must be a positive amount")
        return value


class ExecuteRaffleJob(_JobBase):
    type: Literal["execute-raffle"] = "execute-raffle"
    raffle_id: PositiveInt


class CancelRaffleJob(_JobBase):
    type: Literal["cancel-raffle"] = "cancel-raffle"
    raffle_id: PositiveInt


class ExecuteRefundJob(_JobBase):
    type: Literal["execute-refund"] = "execute-refund"
    raffle_id: PositiveInt


class PauseContractJob(_JobBase):
    type: Literal["pause-contract"] = "pause-contract"


class UnpauseContractJob(_JobBase):
    type: Literal["unpause-contract"] = "unpause-contract"


class EmergencyPauseJob(_JobBase):
    type: Literal["emergency-pause"] = "emergency-pause"


class EmergencyUnpauseJob(_JobBase):
    type: Literal["emergency-unpause"] = "emergency-unpause"


class AddToBlocklistJob(_JobBase):
    type: Literal["add-to-blocklist"] = "add-to-blocklist"
    address: str
    reason: str

    check_address = field_validator("address", mode="before")(checksum_address)
    check_reason = field_validator("reason", mode="before")(clean_reason)


class AddToBlocklistBatchJob(_JobBase):
    type: Literal["add-to-blocklist-batch"] = "add-to-blocklist-batch"
    addresses: List[str] = Field(min_length=1, max_length=MAX_BLOCKLIST_BATCH)
    reasons: List[str] = Field(min_length=1, max_length=MAX_BLOCKLIST_BATCH)

    @field_validator("addresses", mode="before")
    @classmethod
    def check_addresses(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [checksum_address(item) for item in value]
        return value

    @field_validator("reasons", mode="before")
    @classmethod
    def check_reasons(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [clean_reason(item) for item in value]
        return value

    @model_validator(mode="after")
    def check_same_length(self) -> "AddToBlocklistBatchJob":
        if len(self.addresses) != len(self.reasons):
            raise ValueError("addresses and reasons must have the same length")
        return self


class RemoveFromBlocklistJob(_JobBase):
    type: Literal["remove-from-blocklist"] = "remove-from-blocklist"
    address: str

    check_address = field_validator("address", mode="before")(checksum_address)


class WithdrawFeesJob(_JobBase):
    type: Literal["withdraw-fees"] = "withdraw-fees"


class ArchiveRafflesJob(_JobBase):
    type: Literal["archive-raffles"] = "archive-raffles"
    raffle_ids: List[PositiveInt] = Field(min_length=1)


TransactionJob = Annotated[
    Union[
        CreateRaffleJob,
        ExecuteRaffleJob,
        CancelRaffleJob,
        ExecuteRefundJob,
        PauseContractJob,
        UnpauseContractJob,
        EmergencyPauseJob,
        EmergencyUnpauseJob,
        AddToBlocklistJob,
        AddToBlocklistBatchJob,
        RemoveFromBlocklistJob,
        WithdrawFeesJob,
        ArchiveRafflesJob,
    ],
    Field(discriminator="type"),
]

JOB_MODELS = {
    model.model_fields["type"].default: model
    for model in (
        CreateRaffleJob,
        ExecuteRaffleJob,
        CancelRaffleJob,
        ExecuteRefundJob,
        PauseContractJob,
        UnpauseContractJob,
        EmergencyPauseJob,
        EmergencyUnpauseJob,
        AddToBlocklistJob,
        AddToBlocklistBatchJob,
        RemoveFromBlocklistJob,
        WithdrawFeesJob,
        ArchiveRafflesJob,
    )
}
JOB_TYPES = tuple(JOB_MODELS)

_job_adapter = pydantic.TypeAdapter(TransactionJob)


def parse_job(data: Dict[str, Any]):
    """Build the job variant selected by ``data["type"]``.

    Raises JobValidationError for a missing or unknown type, missing fields,
    malformed values, or fields that belong to another variant.
    """
    try:
        return _job_adapter.validate_python(data)
    except pydantic.ValidationError as exc:
        errors = json.loads(exc.json(include_url=False))
        raise JobValidationError(summarize_errors(errors), errors=errors) from exc


def job_type_of(data: Any) -> Optional[str]:
    if isinstance(data, dict):
        value = data.get("type")
        return value if isinstance(value, str) else None
    return None


def summarize_errors(errors: List[Dict[str, Any]]) -> str:
    parts = []
    for err in errors[:5]:
        loc = ".".join(str(p) for p in err.get("loc", ()) if p is not None)
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "invalid job"
