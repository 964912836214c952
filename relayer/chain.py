"""Chain client: contract binding, local signing and receipt waiting.

The relayer owns exactly one signer. Nonces are read as the account's pending
transaction count at submission time, so callers must never have two
submissions in flight at once (the worker serializes them).
"""
import json
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, localcontext
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import structlog
from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import ABIFunctionNotFound, ContractLogicError, TimeExhausted

from .config import Settings
from .errors import ChainConfigurationError, ConfirmationTimeoutError, SubmissionError

logger = structlog.stdlib.get_logger(__name__)


def parse_units(value: str, decimals: int) -> int:
    """Convert a decimal string into a fixed-point integer with ``decimals`` places."""
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"invalid decimal amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"invalid decimal amount: {value!r}")
    with localcontext() as ctx:
        ctx.prec = 100
        scaled = amount.scaleb(decimals)
        if scaled != scaled.to_integral_value():
            raise ValueError(f"too many decimal places in {value!r} (max {decimals})")
        return int(scaled)


def load_abi(path: Path) -> List[Dict[str, Any]]:
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ChainConfigurationError(f"Contract ABI not readable at {path}: {exc}") from exc
    # Accept both a raw ABI list and a compiler artifact
    abi = raw.get("abi") if isinstance(raw, dict) else raw
    if not isinstance(abi, list):
        raise ChainConfigurationError(f"No ABI found in {path}")
    return abi


@dataclass(frozen=True)
class TxReceipt:
    tx_hash: str
    block_number: int
    gas_used: int


@dataclass(frozen=True)
class PendingTransaction:
    hash: str
    nonce: int


def _submission_error(exc: Exception) -> SubmissionError:
    if isinstance(exc, SubmissionError):
        return exc
    if isinstance(exc, ContractLogicError):
        return SubmissionError(str(exc), code="CALL_EXCEPTION")
    # JSON-RPC errors surface as ValueError({"code": ..., "message": ...})
    if exc.args and isinstance(exc.args[0], dict):
        payload = exc.args[0]
        code = payload.get("code")
        return SubmissionError(str(payload.get("message", exc)), code=str(code) if code is not None else None)
    return SubmissionError(str(exc) or type(exc).__name__, code=type(exc).__name__)


class ChainClient:
    def __init__(
        self,
        w3: AsyncWeb3,
        contract_address: str,
        abi: List[Dict[str, Any]],
        private_key: str,
        chain_id: int,
    ):
        self.w3 = w3
        self.chain_id = chain_id
        self._account = Account.from_key(private_key)
        self.contract = w3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=abi)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChainClient":
        w3 = AsyncWeb3(AsyncHTTPProvider(settings.rpc_url))
        client = cls(
            w3,
            contract_address=settings.contract_address,
            abi=load_abi(settings.contract_abi_path),
            private_key=settings.admin_private_key.get_secret_value(),
            chain_id=settings.chain_id,
        )
        logger.info(
            "chain_client_initialized",
            chainId=settings.chain_id,
            contract=settings.contract_address,
            signer=client.address,
        )
        return client

    @property
    def address(self) -> str:
        return self._account.address

    def _function(self, name: str, args: Sequence[Any]):
        try:
            return self.contract.get_function_by_name(name)(*args)
        except (ABIFunctionNotFound, ValueError) as exc:
            raise SubmissionError(f"Contract function unavailable: {name} ({exc})", code="ABI_MISMATCH") from exc

    async def estimate_gas(self, name: str, args: Sequence[Any]) -> int:
        fn = self._function(name, args)
        try:
            return int(await fn.estimate_gas({"from": self.address}))
        except Exception as exc:
            raise _submission_error(exc) from exc

    async def send(self, name: str, args: Sequence[Any], gas: Optional[int] = None) -> PendingTransaction:
        fn = self._function(name, args)
        try:
            nonce = await self.w3.eth.get_transaction_count(self.address, "pending")
            params: Dict[str, Any] = {"from": self.address, "nonce": nonce, "chainId": self.chain_id}
            if gas is not None:
                params["gas"] = gas
            tx = await fn.build_transaction(params)
            signed = self._account.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as exc:
            raise _submission_error(exc) from exc
        pending = PendingTransaction(hash=Web3.to_hex(tx_hash), nonce=nonce)
        logger.info("transaction_broadcast", function=name, txHash=pending.hash, nonce=nonce, gas=gas)
        return pending

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> TxReceipt:
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted as exc:
            raise ConfirmationTimeoutError(
                f"Transaction {tx_hash} not confirmed within {timeout}s", tx_hash=tx_hash
            ) from exc
        except Exception as exc:
            # broadcast already happened, so the transaction may still land
            raise ConfirmationTimeoutError(
                f"Receipt for {tx_hash} unavailable: {exc}", tx_hash=tx_hash, code="RECEIPT_UNAVAILABLE"
            ) from exc
        if receipt["status"] == 0:
            raise SubmissionError(f"Transaction {tx_hash} reverted", code="CALL_EXCEPTION")
        return TxReceipt(tx_hash=tx_hash, block_number=receipt["blockNumber"], gas_used=receipt["gasUsed"])

    async def call(self, name: str, args: Sequence[Any] = ()) -> Any:
        """Read-only view call. Never touches the nonce."""
        return await self._function(name, args).call()
