import json

import pytest

from relayer.chain import load_abi, parse_units
from relayer.config import DEFAULT_ABI_PATH
from relayer.errors import ChainConfigurationError


def test_parse_units_scales_by_decimals():
    assert parse_units("1.0", 18) == 10**18
    assert parse_units("0.5", 6) == 500_000
    assert parse_units("12", 0) == 12
    assert parse_units("123456789.123456789123456789", 18) == 123456789123456789123456789


def test_parse_units_rejects_excess_precision():
    with pytest.raises(ValueError):
        parse_units("0.0000001", 6)


@pytest.mark.parametrize("value", ["", "abc", "Infinity", "NaN"])
def test_parse_units_rejects_non_numbers(value):
    with pytest.raises(ValueError):
        parse_units(value, 18)


def test_bundled_abi_has_every_contract_function():
    names = {item["name"] for item in load_abi(DEFAULT_ABI_PATH) if item.get("type") == "function"}
    assert {
        "createRaffle",
        "executeRaffle",
        "cancelRaffle",
        "executeRefundBatch",
        "pause",
        "unpause",
        "addToBlocklist",
        "addToBlocklistBatch",
        "removeFromBlocklist",
        "withdrawPlatformFees",
        "archiveRaffles",
        "checkAccountingInvariant",
        "getTokenDecimals",
        "scanRaffles",
        "getBlockStatus",
    } <= names


def test_load_abi_accepts_compiler_artifacts(tmp_path):
    artifact = tmp_path / "Raffle.json"
    artifact.write_text(json.dumps({"contractName": "Raffle", "abi": [{"type": "function", "name": "pause"}]}))
    assert load_abi(artifact) == [{"type": "function", "name": "pause"}]


def test_load_abi_rejects_garbage(tmp_path):
    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({"bytecode": "0x00"}))
    with pytest.raises(ChainConfigurationError):
        load_abi(bad)
    with pytest.raises(ChainConfigurationError):
        load_abi(tmp_path / "missing.json")
