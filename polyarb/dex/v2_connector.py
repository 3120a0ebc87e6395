"""Async Web3 connector for Uniswap V2-style routers (QuickSwap, SushiSwap)."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import structlog
from web3 import AsyncWeb3

from polyarb.core.errors import ConnectorError
from polyarb.core.execution import TxRequest
from polyarb.core.types import Reserves
from polyarb.dex.connector import SwapParams, VenueKind
from polyarb.dex.tokens import VenueDeployment
from polyarb.utils.resilience import with_timeout

log = structlog.get_logger()

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class V2RouterConnector:
    """Constant-product venue backed by router, factory and pair contracts."""

    kind = VenueKind.CONSTANT_PRODUCT

    ROUTER_ABI = [
        {
            "inputs": [
                {"internalType": "uint256", "name": "amountIn", "type": "uint256"},
                {"internalType": "address[]", "name": "path", "type": "address[]"},
            ],
            "name": "getAmountsOut",
            "outputs": [{"internalType": "uint256[]", "name": "amounts", "type": "uint256[]"}],
            "stateMutability": "view",
            "type": "function",
        },
        {
            "inputs": [
                {"internalType": "uint256", "name": "amountOut", "type": "uint256"},
                {"internalType": "address[]", "name": "path", "type": "address[]"},
            ],
            "name": "getAmountsIn",
            "outputs": [{"internalType": "uint256[]", "name": "amounts", "type": "uint256[]"}],
            "stateMutability": "view",
            "type": "function",
        },
        {
            "inputs": [
                {"internalType": "uint256", "name": "amountIn", "type": "uint256"},
                {"internalType": "uint256", "name": "amountOutMin", "type": "uint256"},
                {"internalType": "address[]", "name": "path", "type": "address[]"},
                {"internalType": "address", "name": "to", "type": "address"},
                {"internalType": "uint256", "name": "deadline", "type": "uint256"},
            ],
            "name": "swapExactTokensForTokens",
            "outputs": [{"internalType": "uint256[]", "name": "amounts", "type": "uint256[]"}],
            "stateMutability": "nonpayable",
            "type": "function",
        },
    ]

    FACTORY_ABI = [
        {
            "inputs": [
                {"internalType": "address", "name": "tokenA", "type": "address"},
                {"internalType": "address", "name": "tokenB", "type": "address"},
            ],
            "name": "getPair",
            "outputs": [{"internalType": "address", "name": "pair", "type": "address"}],
            "stateMutability": "view",
            "type": "function",
        }
    ]

    PAIR_ABI = [
        {
            "inputs": [],
            "name": "getReserves",
            "outputs": [
                {"internalType": "uint112", "name": "reserve0", "type": "uint112"},
                {"internalType": "uint112", "name": "reserve1", "type": "uint112"},
                {"internalType": "uint32", "name": "blockTimestampLast", "type": "uint32"},
            ],
            "stateMutability": "view",
            "type": "function",
        },
        {
            "inputs": [],
            "name": "token0",
            "outputs": [{"internalType": "address", "name": "", "type": "address"}],
            "stateMutability": "view",
            "type": "function",
        },
    ]

    def __init__(
        self,
        w3: AsyncWeb3,
        deployment: VenueDeployment,
        *,
        call_timeout: float = 10.0,
    ) -> None:
        self.w3 = w3
        self.name = deployment.name
        self.fee_bps = deployment.fee_bps
        self.call_timeout = call_timeout
        self.router_address = w3.to_checksum_address(deployment.router)
        self.router = w3.eth.contract(address=self.router_address, abi=self.ROUTER_ABI)
        self.factory = w3.eth.contract(
            address=w3.to_checksum_address(deployment.factory), abi=self.FACTORY_ABI
        )
        # Pair addresses never change once created.
        self._pair_cache: dict[tuple[str, str], str | None] = {}

    def _checksum_path(self, path: Sequence[str]) -> list[Any]:
        return [self.w3.to_checksum_address(token) for token in path]

    async def _call(self, fn: Any, what: str) -> Any:
        try:
            return await with_timeout(fn.call(), self.call_timeout, f"{self.name} {what} timed out")
        except TimeoutError:
            raise
        except Exception as e:
            msg = f"{self.name} {what} failed: {e}"
            raise ConnectorError(msg) from e

    async def quote_out(self, path: Sequence[str], amount_in: int) -> list[int]:
        amounts = await self._call(
            self.router.functions.getAmountsOut(amount_in, self._checksum_path(path)),
            "getAmountsOut",
        )
        return [int(a) for a in amounts]

    async def quote_in(self, path: Sequence[str], amount_out: int) -> list[int]:
        amounts = await self._call(
            self.router.functions.getAmountsIn(amount_out, self._checksum_path(path)),
            "getAmountsIn",
        )
        return [int(a) for a in amounts]

    async def build_swap_tx(self, params: SwapParams) -> TxRequest:
        fn = self.router.functions.swapExactTokensForTokens(
            params.amount_in,
            params.amount_out_min,
            self._checksum_path([params.token_in, params.token_out]),
            self.w3.to_checksum_address(params.recipient),
            params.deadline,
        )
        return TxRequest(
            to=self.router_address,
            data=fn._encode_transaction_data(),
            value=0,
            from_address=params.recipient,
        )

    async def _pair_address(self, token_a: str, token_b: str) -> str | None:
        cache_key = tuple(sorted((token_a.lower(), token_b.lower())))
        if cache_key in self._pair_cache:
            return self._pair_cache[cache_key]

        pair = await self._call(
            self.factory.functions.getPair(
                self.w3.to_checksum_address(token_a), self.w3.to_checksum_address(token_b)
            ),
            "getPair",
        )
        address = None if pair == ZERO_ADDRESS else str(pair)
        self._pair_cache[cache_key] = address
        return address

    async def pair_exists(self, token_a: str, token_b: str) -> bool:
        return await self._pair_address(token_a, token_b) is not None

    async def get_reserves(self, token_a: str, token_b: str) -> Reserves | None:
        pair_address = await self._pair_address(token_a, token_b)
        if pair_address is None:
            return None

        pair = self.w3.eth.contract(address=pair_address, abi=self.PAIR_ABI)
        reserve0, reserve1, _ = await self._call(pair.functions.getReserves(), "getReserves")
        token0 = await self._call(pair.functions.token0(), "token0")

        if str(token0).lower() == token_a.lower():
            return Reserves(reserve_a=int(reserve0), reserve_b=int(reserve1))
        return Reserves(reserve_a=int(reserve1), reserve_b=int(reserve0))
