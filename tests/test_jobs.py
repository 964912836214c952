import pytest

from relayer.errors import JobValidationError
from relayer.jobs import (
    JOB_TYPES,
    ArchiveRafflesJob,
    CreateRaffleJob,
    ExecuteRefundJob,
    PauseContractJob,
    parse_job,
)

CREATE = {
    "type": "create-raffle",
    "referenceId": "1",
    "templateId": "42",
    "ticketPrice": "1.0",
    "maxTickets": 100,
    "minTickets": 5,
    "durationSeconds": 86400,
}


def test_every_job_type_is_known():
    assert len(JOB_TYPES) == 13
    assert "create-raffle" in JOB_TYPES
    assert "archive-raffles" in JOB_TYPES


def test_parse_create_raffle():
    job = parse_job(CREATE)
    assert isinstance(job, CreateRaffleJob)
    assert job.reference_id == "1"
    assert job.ticket_price == "1.0"
    assert job.to_payload() == CREATE


def test_numeric_reference_id_is_kept_as_integer_string():
    job = parse_job({**CREATE, "referenceId": 7, "templateId": 42})
    assert job.reference_id == "7"
    assert job.template_id == "42"


def test_missing_type_is_rejected():
    data = dict(CREATE)
    del data["type"]
    with pytest.raises(JobValidationError):
        parse_job(data)


def test_unknown_type_is_rejected():
    with pytest.raises(JobValidationError):
        parse_job({"type": "mint-tokens"})


def test_missing_field_is_rejected():
    data = dict(CREATE)
    del data["maxTickets"]
    with pytest.raises(JobValidationError) as exc_info:
        parse_job(data)
    assert any("maxTickets" in err["loc"] for err in exc_info.value.errors)


def test_field_of_another_variant_is_rejected():
    with pytest.raises(JobValidationError):
        parse_job({"type": "execute-refund", "raffleId": 3, "address": "0x" + "11" * 20})


@pytest.mark.parametrize("price", ["0", "-1", "abc", "NaN"])
def test_bad_ticket_price_is_rejected(price):
    with pytest.raises(JobValidationError):
        parse_job({**CREATE, "ticketPrice": price})


def test_raffle_id_must_be_positive():
    with pytest.raises(JobValidationError):
        parse_job({"type": "execute-refund", "raffleId": 0})
    assert parse_job({"type": "execute-refund", "raffleId": "12"}) == ExecuteRefundJob(raffle_id=12)


def test_payload_free_jobs():
    assert isinstance(parse_job({"type": "pause-contract"}), PauseContractJob)
    with pytest.raises(JobValidationError):
        parse_job({"type": "pause-contract", "raffleId": 1})


def test_blocklist_addresses_are_checksummed():
    job = parse_job(
        {
            "type": "add-to-blocklist",
            "address": "0x5fbdb2315678afecb367f032d93f642f64180aa3",
            "reason": "  sanctions  ",
        }
    )
    assert job.address == "0x5FbDB2315678afecb367f032d93F642f64180aa3"
    assert job.reason == "sanctions"


def test_blocklist_batch_needs_matching_lengths():
    with pytest.raises(JobValidationError):
        parse_job(
            {"type": "add-to-blocklist-batch", "addresses": ["0x" + "11" * 20, "0x" + "22" * 20], "reasons": ["one"]}
        )


def test_blocklist_batch_is_capped():
    addresses = ["0x" + format(i + 1, "040x") for i in range(101)]
    with pytest.raises(JobValidationError):
        parse_job({"type": "add-to-blocklist-batch", "addresses": addresses, "reasons": ["r"] * 101})


def test_archive_needs_ids():
    with pytest.raises(JobValidationError):
        parse_job({"type": "archive-raffles", "raffleIds": []})
    assert parse_job({"type": "archive-raffles", "raffleIds": [1, 2]}) == ArchiveRafflesJob(raffle_ids=[1, 2])


def test_jobs_are_immutable():
    job = parse_job(CREATE)
    with pytest.raises(Exception):
        job.max_tickets = 1
