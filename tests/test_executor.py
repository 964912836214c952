import pytest

from relayer.errors import ConfirmationTimeoutError, SubmissionError, TransactionError, UnknownJobTypeError
from relayer.executor import ALWAYS_CONFIRM, ConfirmationPolicy, TransactionExecutor
from relayer.jobs import JOB_TYPES, parse_job

ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"

SAMPLES = {
    "create-raffle": {
        "referenceId": "1",
        "templateId": "42",
        "ticketPrice": "1.5",
        "maxTickets": 100,
        "minTickets": 5,
        "durationSeconds": 86400,
    },
    "execute-raffle": {"raffleId": 3},
    "cancel-raffle": {"raffleId": 4},
    "execute-refund": {"raffleId": 5},
    "pause-contract": {},
    "unpause-contract": {},
    "emergency-pause": {},
    "emergency-unpause": {},
    "add-to-blocklist": {"address": ADDRESS, "reason": "fraud"},
    "add-to-blocklist-batch": {"addresses": [ADDRESS, "0x" + "11" * 20], "reasons": ["a", "b"]},
    "remove-from-blocklist": {"address": ADDRESS},
    "withdraw-fees": {},
    "archive-raffles": {"raffleIds": [1, 2, 3]},
}

EXPECTED_CALLS = {
    "create-raffle": ("createRaffle", (42, 1, 1_500_000_000_000_000_000, 100, 5, 86400)),
    "execute-raffle": ("executeRaffle", (3,)),
    "cancel-raffle": ("cancelRaffle", (4,)),
    "execute-refund": ("executeRefundBatch", (5,)),
    "pause-contract": ("pause", ()),
    "unpause-contract": ("unpause", ()),
    "emergency-pause": ("emergencyPause", ()),
    "emergency-unpause": ("emergencyUnpause", ()),
    "add-to-blocklist": ("addToBlocklist", (ADDRESS, "fraud")),
    "add-to-blocklist-batch": (
        "addToBlocklistBatch",
        ([ADDRESS, "0x1111111111111111111111111111111111111111"], ["a", "b"]),
    ),
    "remove-from-blocklist": ("removeFromBlocklist", (ADDRESS,)),
    "withdraw-fees": ("withdrawPlatformFees", ()),
    "archive-raffles": ("archiveRaffles", ([1, 2, 3],)),
}


def job_of(job_type):
    return parse_job({"type": job_type, **SAMPLES[job_type]})


def test_samples_cover_every_job_type():
    assert set(SAMPLES) == set(JOB_TYPES)


@pytest.mark.asyncio
@pytest.mark.parametrize("job_type", sorted(EXPECTED_CALLS))
async def test_each_job_type_makes_exactly_one_call(job_type, chain):
    result = await TransactionExecutor(chain).execute(job_of(job_type))

    assert len(chain.sent) == 1
    function, args = EXPECTED_CALLS[job_type]
    assert (chain.sent[0].function, chain.sent[0].args) == (function, args)
    assert result["txHash"] == chain.sent[0].hash
    assert result["confirmed"] is True
    assert result["gasUsed"] == "21000"


@pytest.mark.asyncio
async def test_echo_fields(chain):
    executor = TransactionExecutor(chain)
    assert (await executor.execute(job_of("create-raffle")))["referenceId"] == "1"
    assert (await executor.execute(job_of("execute-refund")))["raffleId"] == "5"
    assert (await executor.execute(job_of("add-to-blocklist")))["address"] == ADDRESS
    assert (await executor.execute(job_of("add-to-blocklist-batch")))["count"] == 2
    assert (await executor.execute(job_of("archive-raffles")))["count"] == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("job_type", ["execute-raffle", "cancel-raffle", "execute-refund"])
async def test_variable_cost_calls_get_gas_margin(job_type, chain):
    chain.gas_estimate = 250_000
    await TransactionExecutor(chain, gas_margin_percent=20).execute(job_of(job_type))
    assert len(chain.estimates) == 1
    assert chain.sent[0].gas == 300_000


@pytest.mark.asyncio
async def test_fixed_cost_calls_use_default_estimation(chain):
    await TransactionExecutor(chain).execute(job_of("create-raffle"))
    assert chain.estimates == []
    assert chain.sent[0].gas is None


@pytest.mark.asyncio
async def test_token_decimals_scale_ticket_price(chain):
    await TransactionExecutor(chain, token_decimals=6).execute(job_of("create-raffle"))
    assert chain.sent[0].args[2] == 1_500_000


@pytest.mark.asyncio
async def test_too_precise_ticket_price_fails_before_submission(chain):
    job = parse_job({"type": "create-raffle", **SAMPLES["create-raffle"], "ticketPrice": "0.0000001"})
    with pytest.raises(SubmissionError) as exc_info:
        await TransactionExecutor(chain, token_decimals=6).execute(job)
    assert exc_info.value.code == "INVALID_ARGUMENT"
    assert chain.sent == []


@pytest.mark.asyncio
async def test_skipped_types_return_on_broadcast(chain):
    executor = TransactionExecutor(chain, policy=ConfirmationPolicy({"create-raffle"}))
    result = await executor.execute(job_of("create-raffle"))
    assert result["confirmed"] is False
    assert "blockNumber" not in result
    assert chain.waited == []


def test_security_sensitive_types_always_confirm():
    policy = ConfirmationPolicy(set(JOB_TYPES))
    for job_type in ALWAYS_CONFIRM:
        assert policy.should_wait(job_type)
    assert not policy.should_wait("archive-raffles")


@pytest.mark.asyncio
async def test_submission_failure_is_a_transaction_error(chain):
    chain.failures["executeRefundBatch"] = SubmissionError("execution reverted", code="CALL_EXCEPTION")
    with pytest.raises(TransactionError) as exc_info:
        await TransactionExecutor(chain).execute(job_of("execute-refund"))
    assert exc_info.value.code == "CALL_EXCEPTION"


@pytest.mark.asyncio
async def test_unexpected_errors_are_wrapped(chain):
    chain.failures["pause"] = ConnectionError("rpc down")
    with pytest.raises(SubmissionError) as exc_info:
        await TransactionExecutor(chain).execute(job_of("pause-contract"))
    assert exc_info.value.code == "ConnectionError"
    assert "rpc down" in exc_info.value.message


@pytest.mark.asyncio
async def test_unknown_job_object_is_rejected(chain):
    with pytest.raises(UnknownJobTypeError):
        await TransactionExecutor(chain).execute(object())


@pytest.mark.asyncio
async def test_resume_waits_for_recorded_hash_without_rebroadcast(chain):
    result = await TransactionExecutor(chain).execute(job_of("execute-raffle"), resume_tx_hash="0xabc")
    assert chain.sent == []
    assert chain.waited == ["0xabc"]
    assert result["txHash"] == "0xabc"


@pytest.mark.asyncio
async def test_broadcast_hash_is_reported_before_confirmation(chain):
    seen = []

    async def on_submitted(tx_hash):
        seen.append((tx_hash, list(chain.waited)))

    await TransactionExecutor(chain).execute(job_of("pause-contract"), on_submitted=on_submitted)
    assert seen == [(chain.sent[0].hash, [])]


@pytest.mark.asyncio
async def test_lost_receipt_keeps_the_broadcast_hash(chain):
    chain.receipt_failures.append(ConnectionError("rpc connection dropped"))
    with pytest.raises(ConfirmationTimeoutError) as exc_info:
        await TransactionExecutor(chain).execute(job_of("withdraw-fees"))
    assert exc_info.value.tx_hash == chain.sent[0].hash
    assert exc_info.value.code == "ConnectionError"
