"""Chain client capability: fees, nonces, submission and confirmation.

``ChainClient`` is the only surface the engine uses to talk to the network.
``Web3ChainClient`` implements it over AsyncWeb3 with a local signing key.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol, cast

import msgspec
import structlog
from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import TimeExhausted, TransactionNotFound
from web3.types import Nonce, TxParams, Wei

from polyarb.core.errors import ChainError
from polyarb.core.execution import Receipt, TxHandle, TxRequest
from polyarb.utils.resilience import with_timeout

log = structlog.get_logger()


class FeeEstimate(msgspec.Struct, frozen=True, kw_only=True):
    """Current fee market in wei.

    ``priority_fee`` is zero and ``eip1559`` False on legacy-priced chains,
    where ``base_fee`` carries the legacy gas price.
    """

    base_fee: int
    priority_fee: int = 0
    eip1559: bool = True


class ChainClient(Protocol):
    address: str

    async def get_fee_estimate(self) -> FeeEstimate: ...

    async def get_nonce(self, address: str) -> int:
        """Pending-state transaction count for ``address``."""
        ...

    async def submit(self, tx: TxRequest) -> TxHandle: ...

    async def await_confirmation(
        self, handle: TxHandle, confirmations: int, timeout: float
    ) -> Receipt | None:
        """Receipt once ``confirmations`` blocks deep, None on timeout."""
        ...

    async def estimate_gas(self, tx: TxRequest) -> int: ...

    async def get_block_number(self) -> int: ...


class Web3ChainClient:
    """AsyncWeb3-backed chain client."""

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        *,
        chain_id: int = 137,
        call_timeout: float = 10.0,
        poll_interval: float = 1.0,
    ) -> None:
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.account = Account.from_key(private_key)
        self.address = self.account.address
        self.chain_id = chain_id
        self.call_timeout = call_timeout
        self.poll_interval = poll_interval

    async def _rpc(self, coro: Any, what: str) -> Any:
        try:
            return await with_timeout(coro, self.call_timeout, f"{what} timed out")
        except TimeoutError:
            raise
        except Exception as e:
            # Keep the node's message: the executor classifies on it.
            raise ChainError(f"{what}: {e}") from e

    async def get_fee_estimate(self) -> FeeEstimate:
        block = await self._rpc(self.w3.eth.get_block("latest"), "get_block")
        base_fee = block.get("baseFeePerGas")
        if base_fee is None:
            gas_price = await self._rpc(self.w3.eth.gas_price, "gas_price")
            return FeeEstimate(base_fee=int(gas_price), eip1559=False)
        priority_fee = await self._rpc(self.w3.eth.max_priority_fee, "max_priority_fee")
        return FeeEstimate(base_fee=int(base_fee), priority_fee=int(priority_fee))

    async def get_nonce(self, address: str) -> int:
        count = await self._rpc(
            self.w3.eth.get_transaction_count(self.w3.to_checksum_address(address), "pending"),
            "get_transaction_count",
        )
        return int(count)

    def _tx_params(self, tx: TxRequest) -> TxParams:
        params: TxParams = {
            "from": self.account.address,
            "to": self.w3.to_checksum_address(tx.to),
            "data": tx.data,
            "value": cast(Wei, tx.value),
            "chainId": tx.chain_id or self.chain_id,
        }
        if tx.gas_limit:
            params["gas"] = tx.gas_limit
        if tx.nonce is not None:
            params["nonce"] = cast(Nonce, tx.nonce)
        if tx.max_fee_per_gas is not None:
            params["maxFeePerGas"] = cast(Wei, tx.max_fee_per_gas)
            params["maxPriorityFeePerGas"] = cast(Wei, tx.max_priority_fee_per_gas or 0)
        elif tx.gas_price is not None:
            params["gasPrice"] = cast(Wei, tx.gas_price)
        return params

    async def submit(self, tx: TxRequest) -> TxHandle:
        if tx.nonce is None:
            msg = "Refusing to submit a transaction without an allocated nonce"
            raise ChainError(msg)
        signed = self.account.sign_transaction(self._tx_params(tx))
        tx_hash = await self._rpc(
            self.w3.eth.send_raw_transaction(signed.raw_transaction), "send_raw_transaction"
        )
        return "0x" + bytes(tx_hash).hex()

    async def await_confirmation(
        self, handle: TxHandle, confirmations: int, timeout: float
    ) -> Receipt | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        try:
            raw = await self.w3.eth.wait_for_transaction_receipt(
                handle, timeout=timeout, poll_latency=self.poll_interval
            )
        except (TimeExhausted, TransactionNotFound):
            log.warning("chain.receipt_timeout", tx_hash=handle, timeout=timeout)
            return None

        receipt = Receipt(
            tx_hash=handle,
            status=int(raw["status"]),
            gas_used=int(raw["gasUsed"]),
            effective_gas_price=int(raw.get("effectiveGasPrice", 0)),
            block_number=int(raw["blockNumber"]),
        )
        while confirmations > 1:
            head = await self.get_block_number()
            if head - (receipt.block_number or head) + 1 >= confirmations:
                break
            if loop.time() >= deadline:
                log.warning("chain.confirmation_timeout", tx_hash=handle, depth=confirmations)
                return None
            await asyncio.sleep(self.poll_interval)
        return receipt

    async def estimate_gas(self, tx: TxRequest) -> int:
        params = self._tx_params(tx)
        params.pop("nonce", None)
        return int(await self._rpc(self.w3.eth.estimate_gas(params), "estimate_gas"))

    async def get_block_number(self) -> int:
        return int(await self._rpc(self.w3.eth.block_number, "block_number"))
