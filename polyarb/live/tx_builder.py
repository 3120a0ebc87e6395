"""Atomic arbitrage transaction encoding.

Plain paths are bundled into one Multicall3 ``aggregate`` call built from
each hop's router calldata. Flash-loan paths call Aave's ``flashLoanSimple``
(or the Balancer vault) with the route encoded for a receiver contract that
performs the swaps in its callback.
"""

from __future__ import annotations

import time

import structlog
from web3 import Web3

from polyarb.core.errors import ExecutionError
from polyarb.core.execution import TxRequest
from polyarb.core.types import SimulationResult
from polyarb.dex.connector import ConnectorRegistry, SwapParams
from polyarb.dex.tokens import AAVE_POOL, BALANCER_VAULT
from polyarb.utils.resilience import with_timeout

log = structlog.get_logger()

MULTICALL3 = "0xcA11bde05977b3631167028862bE2a173976CA11"

MULTICALL_ABI = [
    {
        "inputs": [
            {
                "components": [
                    {"internalType": "address", "name": "target", "type": "address"},
                    {"internalType": "bytes", "name": "callData", "type": "bytes"},
                ],
                "internalType": "struct Multicall3.Call[]",
                "name": "calls",
                "type": "tuple[]",
            }
        ],
        "name": "aggregate",
        "outputs": [
            {"internalType": "uint256", "name": "blockNumber", "type": "uint256"},
            {"internalType": "bytes[]", "name": "returnData", "type": "bytes[]"},
        ],
        "stateMutability": "payable",
        "type": "function",
    }
]

AAVE_POOL_ABI = [
    {
        "inputs": [
            {"internalType": "address", "name": "receiverAddress", "type": "address"},
            {"internalType": "address", "name": "asset", "type": "address"},
            {"internalType": "uint256", "name": "amount", "type": "uint256"},
            {"internalType": "bytes", "name": "params", "type": "bytes"},
            {"internalType": "uint16", "name": "referralCode", "type": "uint16"},
        ],
        "name": "flashLoanSimple",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    }
]

BALANCER_VAULT_ABI = [
    {
        "inputs": [
            {"internalType": "address", "name": "recipient", "type": "address"},
            {"internalType": "address[]", "name": "tokens", "type": "address[]"},
            {"internalType": "uint256[]", "name": "amounts", "type": "uint256[]"},
            {"internalType": "bytes", "name": "userData", "type": "bytes"},
        ],
        "name": "flashLoan",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    }
]


class TxBuilder:
    """Encodes a simulated path as one atomic transaction."""

    def __init__(
        self,
        connectors: ConnectorRegistry,
        recipient: str,
        *,
        flash_loan_receiver: str | None = None,
        tx_deadline_seconds: int = 1200,
        call_timeout: float = 10.0,
    ) -> None:
        self.connectors = connectors
        self.recipient = recipient
        self.flash_loan_receiver = flash_loan_receiver
        self.tx_deadline_seconds = tx_deadline_seconds
        self.call_timeout = call_timeout

        # Encoding only; no provider needed.
        self.w3 = Web3()
        self.multicall = self.w3.eth.contract(address=MULTICALL3, abi=MULTICALL_ABI)
        self.aave_pool = self.w3.eth.contract(address=Web3.to_checksum_address(AAVE_POOL), abi=AAVE_POOL_ABI)
        self.balancer_vault = self.w3.eth.contract(
            address=Web3.to_checksum_address(BALANCER_VAULT), abi=BALANCER_VAULT_ABI
        )

    def _deadline(self) -> int:
        return int(time.time()) + self.tx_deadline_seconds

    async def hop_calls(self, simulation: SimulationResult) -> list[tuple[str, bytes]]:
        """(router, calldata) per hop; only the last hop enforces the minimum output."""
        if not simulation.breakdown:
            msg = f"Simulation for {simulation.path.id} has no hops to encode"
            raise ExecutionError(msg)

        deadline = self._deadline()
        last = len(simulation.breakdown) - 1
        calls: list[tuple[str, bytes]] = []
        for index, hop in enumerate(simulation.breakdown):
            connector = self.connectors.get(hop.exchange)
            tx = await with_timeout(
                connector.build_swap_tx(
                    SwapParams(
                        token_in=hop.token_in.address,
                        token_out=hop.token_out.address,
                        amount_in=hop.amount_in,
                        amount_out_min=simulation.min_output if index == last else 0,
                        recipient=self.recipient,
                        deadline=deadline,
                    )
                ),
                self.call_timeout,
            )
            calls.append((Web3.to_checksum_address(tx.to), bytes.fromhex(tx.data.removeprefix("0x"))))
        return calls

    async def build(self, simulation: SimulationResult) -> TxRequest:
        """Multicall3 bundle of the hop swaps.

        Multicall3 is the ``msg.sender`` of every swap, so the routers pull
        tokens from it, not from the wallet. It holds no balance or approvals,
        which means live plain bundles revert on chain until routed through an
        executor contract that owns the inventory.

        Raises:
            ExecutionError: For a path that only settles inside a flash loan
        """
        if simulation.path.requires_flash_loan:
            msg = f"Path {simulation.path.id} requires a flash loan; use build_flash_loan"
            raise ExecutionError(msg)
        calls = await self.hop_calls(simulation)
        data = self.multicall.functions.aggregate(calls)._encode_transaction_data()
        return TxRequest(to=MULTICALL3, data=data, value=0, from_address=self.recipient)

    async def build_flash_loan(self, simulation: SimulationResult, provider: str = "aave") -> TxRequest:
        """Borrow the input amount and route it through the receiver contract.

        Raises:
            ExecutionError: Without a receiver contract or for an unsupported provider
        """
        if not self.flash_loan_receiver:
            msg = "Flash loan receiver contract not configured"
            raise ExecutionError(msg)

        calls = await self.hop_calls(simulation)
        route = self.w3.codec.encode(
            ["address[]", "bytes[]", "uint256", "uint256"],
            [
                [target for target, _ in calls],
                [data for _, data in calls],
                simulation.input_amount,
                simulation.min_output,
            ],
        )
        receiver = Web3.to_checksum_address(self.flash_loan_receiver)
        asset = Web3.to_checksum_address(simulation.path.start_token.address)

        if provider == "aave":
            data = self.aave_pool.functions.flashLoanSimple(
                receiver, asset, simulation.input_amount, route, 0
            )._encode_transaction_data()
            to = self.aave_pool.address
        elif provider == "balancer":
            data = self.balancer_vault.functions.flashLoan(
                receiver, [asset], [simulation.input_amount], route
            )._encode_transaction_data()
            to = self.balancer_vault.address
        else:
            msg = f"Unsupported flash loan provider for execution: {provider}"
            raise ExecutionError(msg)

        log.info(
            "tx_builder.flash_loan_built",
            path=simulation.path.id,
            provider=provider,
            amount=simulation.input_amount,
        )
        return TxRequest(to=to, data=data, value=0, from_address=self.recipient)
