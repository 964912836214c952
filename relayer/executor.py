"""Maps each job variant onto exactly one contract call."""
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, Optional, Tuple

import structlog

from .chain import TxReceipt, parse_units
from .errors import ConfirmationTimeoutError, SubmissionError, TransactionError, UnknownJobTypeError
from .jobs import (
    AddToBlocklistBatchJob,
    AddToBlocklistJob,
    ArchiveRafflesJob,
    CancelRaffleJob,
    CreateRaffleJob,
    ExecuteRaffleJob,
    ExecuteRefundJob,
    EmergencyPauseJob,
    EmergencyUnpauseJob,
    PauseContractJob,
    RemoveFromBlocklistJob,
    UnpauseContractJob,
    WithdrawFeesJob,
)

logger = structlog.stdlib.get_logger(__name__)

# Security-sensitive operations never return before their receipt arrives
ALWAYS_CONFIRM: FrozenSet[str] = frozenset(
    {
        "pause-contract",
        "unpause-contract",
        "emergency-pause",
        "emergency-unpause",
        "add-to-blocklist",
        "add-to-blocklist-batch",
        "remove-from-blocklist",
        "withdraw-fees",
    }
)


class ConfirmationPolicy:
    """Decides per job type whether the executor waits for the receipt."""

    def __init__(self, skip: Iterable[str] = ()):
        requested = frozenset(skip)
        ignored = requested & ALWAYS_CONFIRM
        if ignored:
            logger.warning("confirmation_skip_ignored", types=sorted(ignored))
        self.skip = requested - ALWAYS_CONFIRM

    def should_wait(self, job_type: str) -> bool:
        return job_type not in self.skip


@dataclass(frozen=True)
class ContractCall:
    function: str
    args: Tuple[Any, ...] = ()
    estimate_gas: bool = False
    echo: Dict[str, Any] = field(default_factory=dict)


OnSubmitted = Callable[[str], Awaitable[None]]


class TransactionExecutor:
    def __init__(
        self,
        chain,
        token_decimals: int = 18,
        gas_margin_percent: int = 20,
        confirmation_timeout: float = 50.0,
        policy: Optional[ConfirmationPolicy] = None,
    ):
        self.chain = chain
        self.token_decimals = token_decimals
        self.gas_margin_percent = gas_margin_percent
        self.confirmation_timeout = confirmation_timeout
        self.policy = policy or ConfirmationPolicy()
        self._builders = {
            CreateRaffleJob: self._create_raffle,
            ExecuteRaffleJob: self._execute_raffle,
            CancelRaffleJob: self._cancel_raffle,
            ExecuteRefundJob: self._execute_refund,
            PauseContractJob: self._pause,
            UnpauseContractJob: self._unpause,
            EmergencyPauseJob: self._emergency_pause,
            EmergencyUnpauseJob: self._emergency_unpause,
            AddToBlocklistJob: self._add_to_blocklist,
            AddToBlocklistBatchJob: self._add_to_blocklist_batch,
            RemoveFromBlocklistJob: self._remove_from_blocklist,
            WithdrawFeesJob: self._withdraw_fees,
            ArchiveRafflesJob: self._archive_raffles,
        }

    # call builders

    def _create_raffle(self, job: CreateRaffleJob) -> ContractCall:
        try:
            price = parse_units(job.ticket_price, self.token_decimals)
        except ValueError as exc:
            raise SubmissionError(str(exc), code="INVALID_ARGUMENT") from exc
        return ContractCall(
            "createRaffle",
            (
                int(job.template_id),
                int(job.reference_id),
                price,
                job.max_tickets,
                job.min_tickets,
                job.duration_seconds,
            ),
            echo={"referenceId": job.reference_id},
        )

    def _execute_raffle(self, job: ExecuteRaffleJob) -> ContractCall:
        # VRF request cost varies with the raffle state
        return ContractCall("executeRaffle", (job.raffle_id,), estimate_gas=True, echo={"raffleId": str(job.raffle_id)})

    def _cancel_raffle(self, job: CancelRaffleJob) -> ContractCall:
        return ContractCall("cancelRaffle", (job.raffle_id,), estimate_gas=True, echo={"raffleId": str(job.raffle_id)})

    def _execute_refund(self, job: ExecuteRefundJob) -> ContractCall:
        return ContractCall(
            "executeRefundBatch", (job.raffle_id,), estimate_gas=True, echo={"raffleId": str(job.raffle_id)}
        )

    def _pause(self, job: PauseContractJob) -> ContractCall:
        return ContractCall("pause")

    def _unpause(self, job: UnpauseContractJob) -> ContractCall:
        return ContractCall("unpause")

    def _emergency_pause(self, job: EmergencyPauseJob) -> ContractCall:
        return ContractCall("emergencyPause")

    def _emergency_unpause(self, job: EmergencyUnpauseJob) -> ContractCall:
        return ContractCall("emergencyUnpause")

    def _add_to_blocklist(self, job: AddToBlocklistJob) -> ContractCall:
        return ContractCall("addToBlocklist", (job.address, job.reason), echo={"address": job.address})

    def _add_to_blocklist_batch(self, job: AddToBlocklistBatchJob) -> ContractCall:
        return ContractCall(
            "addToBlocklistBatch",
            (list(job.addresses), list(job.reasons)),
            echo={"count": len(job.addresses)},
        )

    def _remove_from_blocklist(self, job: RemoveFromBlocklistJob) -> ContractCall:
        return ContractCall("removeFromBlocklist", (job.address,), echo={"address": job.address})

    def _withdraw_fees(self, job: WithdrawFeesJob) -> ContractCall:
        return ContractCall("withdrawPlatformFees")

    def _archive_raffles(self, job: ArchiveRafflesJob) -> ContractCall:
        return ContractCall("archiveRaffles", (list(job.raffle_ids),), echo={"count": len(job.raffle_ids)})

    def build_call(self, job) -> ContractCall:
        builder = self._builders.get(type(job))
        if builder is None:
            raise UnknownJobTypeError(getattr(job, "type", type(job).__name__))
        return builder(job)

    def gas_limit(self, estimate: int) -> int:
        return estimate * (100 + self.gas_margin_percent) // 100

    # execution

    async def execute(
        self,
        job,
        resume_tx_hash: Optional[str] = None,
        on_submitted: Optional[OnSubmitted] = None,
    ) -> Dict[str, Any]:
        """Submit the call for ``job`` and, per policy, wait for its receipt.

        When ``resume_tx_hash`` is set the transaction was already broadcast by
        an earlier delivery, so only its receipt is awaited. Every failure is
        raised as a TransactionError. Once a hash exists, anything short of a
        reverted receipt is a ConfirmationTimeoutError carrying that hash, so
        the next delivery resumes instead of broadcasting again.
        """
        call = self.build_call(job)
        wait = self.policy.should_wait(job.type)
        if resume_tx_hash is not None:
            logger.info("transaction_resumed", function=call.function, txHash=resume_tx_hash)
            tx_hash = resume_tx_hash
        else:
            tx_hash = await self._broadcast(call)

        try:
            if resume_tx_hash is None and on_submitted is not None:
                await on_submitted(tx_hash)
            if not wait:
                return self._result(call, tx_hash, None)
            receipt = await self.chain.wait_for_receipt(tx_hash, self.confirmation_timeout)
        except TransactionError:
            raise
        except Exception as exc:
            raise ConfirmationTimeoutError(
                f"Transaction {tx_hash} outcome unknown: {str(exc) or type(exc).__name__}",
                tx_hash=tx_hash,
                code=type(exc).__name__,
            ) from exc
        return self._result(call, tx_hash, receipt)

    async def _broadcast(self, call: ContractCall) -> str:
        try:
            gas = None
            if call.estimate_gas:
                gas = self.gas_limit(await self.chain.estimate_gas(call.function, call.args))
            pending = await self.chain.send(call.function, call.args, gas=gas)
        except TransactionError:
            raise
        except Exception as exc:
            raise SubmissionError(str(exc) or type(exc).__name__, code=type(exc).__name__) from exc
        return pending.hash

    @staticmethod
    def _result(call: ContractCall, tx_hash: str, receipt: Optional[TxReceipt]) -> Dict[str, Any]:
        result: Dict[str, Any] = {"txHash": tx_hash}
        result.update(call.echo)
        result["confirmed"] = receipt is not None
        if receipt is not None:
            result["blockNumber"] = receipt.block_number
            result["gasUsed"] = str(receipt.gas_used)
        return result

