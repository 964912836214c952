import os
import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import pytest
from httpx import ASGITransport, AsyncClient

os.environ["TESTING"] = "1"

from relayer.chain import PendingTransaction, TxReceipt
from relayer.config import Settings
from relayer.errors import ConfirmationTimeoutError
from relayer.main import create_app
from relayer.redis_helper import AsyncInMemoryRedis
from relayer.services import build_services

API_KEY = "test-relayer-key"
CONTRACT_ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
PRIVATE_KEY = "0x" + "ac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
SIGNER = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"


@dataclass
class SentTx:
    function: str
    args: Tuple[Any, ...]
    gas: Optional[int]
    hash: str
    nonce: int


class FakeChainClient:
    """Stands in for ChainClient: records every call and can be told to fail."""

    address = SIGNER

    def __init__(self):
        self.gas_estimate = 100_000
        self.failures: Dict[str, Exception] = {}
        self.timeouts_remaining = 0
        self.receipt_delay = 0.0
        self.receipt_failures: List[Exception] = []
        self.view_results: Dict[str, Any] = {}
        self.sent: List[SentTx] = []
        self.estimates: List[Tuple[str, Tuple[Any, ...]]] = []
        self.waited: List[str] = []
        self.events: List[Tuple[str, str]] = []
        self._pending = set()
        self.max_pending = 0

    async def estimate_gas(self, name, args):
        self.estimates.append((name, tuple(args)))
        if name in self.failures:
            raise self.failures[name]
        return self.gas_estimate

    async def send(self, name, args, gas=None):
        if name in self.failures:
            raise self.failures[name]
        nonce = len(self.sent)
        tx_hash = "0x" + format(nonce + 1, "064x")
        self.sent.append(SentTx(name, tuple(args), gas, tx_hash, nonce))
        self.events.append(("send", tx_hash))
        self._pending.add(tx_hash)
        self.max_pending = max(self.max_pending, len(self._pending))
        return PendingTransaction(hash=tx_hash, nonce=nonce)

    async def wait_for_receipt(self, tx_hash, timeout):
        self.waited.append(tx_hash)
        if self.receipt_delay:
            await asyncio.sleep(self.receipt_delay)
        if self.receipt_failures:
            raise self.receipt_failures.pop(0)
        if self.timeouts_remaining > 0:
            self.timeouts_remaining -= 1
            raise ConfirmationTimeoutError(f"Transaction {tx_hash} not confirmed within {timeout}s", tx_hash=tx_hash)
        self._pending.discard(tx_hash)
        self.events.append(("receipt", tx_hash))
        return TxReceipt(tx_hash=tx_hash, block_number=100 + len(self.waited), gas_used=21_000)

    async def call(self, name, args=()):
        if name in self.failures:
            raise self.failures[name]
        result = self.view_results[name]
        return result(*args) if callable(result) else result

    def sent_functions(self):
        return [tx.function for tx in self.sent]


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_settings(**overrides) -> Settings:
    values = dict(
        contract_address=CONTRACT_ADDRESS,
        admin_private_key=PRIVATE_KEY,
        relayer_api_key=API_KEY,
        admin_ips="127.0.0.1",
        rate_limit_per_minute=1000,
        run_worker_in_process=False,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def chain():
    return FakeChainClient()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis_client():
    return AsyncInMemoryRedis()


@pytest.fixture
async def services(settings, redis_client, chain, clock):
    built = await build_services(settings, redis_client=redis_client, chain=chain, clock=clock)
    built.monitor.attach()
    yield built
    await built.stop()


@pytest.fixture
def api_headers():
    return {"X-API-Key": API_KEY}


@pytest.fixture
async def client(services):
    app = create_app(services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        yield ac
