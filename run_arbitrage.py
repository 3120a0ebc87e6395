"""
Polygon DEX arbitrage engine.

This script:
1. Builds the liquidity graph from the enabled venues
2. Watches new blocks and simulates every discovered path
3. Ranks, sizes and risk-checks the profitable ones
4. Executes approved trades (or simulates them in dry-run mode)
5. Serves the control API (status, pause, resume, emergency stop)

SAFETY: Starts in simulate mode by default! Set EXECUTOR_MODE=live to trade.
"""

import asyncio
import contextlib
import signal

import structlog
import uvicorn
from dotenv import load_dotenv
from eth_account import Account
from fastapi import FastAPI

# Load environment variables
load_dotenv()

from polyarb.api.control import create_control_router  # noqa: E402
from polyarb.arb.pathfinder import Pathfinder  # noqa: E402
from polyarb.arb.simulator import Simulator  # noqa: E402
from polyarb.arb.strategy import Strategy  # noqa: E402
from polyarb.config import ArbSettings  # noqa: E402
from polyarb.core.risk import RiskManager  # noqa: E402
from polyarb.dex.connector import ConnectorRegistry, VenueKind  # noqa: E402
from polyarb.dex.price_oracle import ReservePriceOracle  # noqa: E402
from polyarb.dex.tokens import VENUES  # noqa: E402
from polyarb.dex.v2_connector import V2RouterConnector  # noqa: E402
from polyarb.live.chain import Web3ChainClient  # noqa: E402
from polyarb.live.executor import Executor  # noqa: E402
from polyarb.live.gas_manager import GasManager  # noqa: E402
from polyarb.live.ledger import StructlogLedger  # noqa: E402
from polyarb.live.nonce import NonceAllocator  # noqa: E402
from polyarb.live.tx_builder import TxBuilder  # noqa: E402
from polyarb.live.watcher import Watcher  # noqa: E402
from polyarb.utils.log import configure_logging  # noqa: E402

log = structlog.get_logger()


def build_watcher(settings: ArbSettings) -> tuple[Watcher, GasManager]:
    """Wire every component from settings."""
    if settings.private_key is not None:
        private_key = settings.private_key.get_secret_value()
    else:
        # Simulate mode only (enforced by settings validation): a throwaway signer.
        private_key = Account.create().key.hex()

    chain = Web3ChainClient(
        settings.polygon_rpc_url,
        private_key,
        chain_id=settings.chain_id,
        call_timeout=settings.rpc_timeout_seconds,
    )

    registry = ConnectorRegistry(
        {
            VenueKind.CONSTANT_PRODUCT: lambda name: V2RouterConnector(
                chain.w3, VENUES[name], call_timeout=settings.rpc_timeout_seconds
            ),
        }
    )
    for name in settings.dex_list:
        registry.register(name, VenueKind.CONSTANT_PRODUCT)

    oracle = ReservePriceOracle(registry)
    gas = GasManager(chain, settings.gas_config())
    risk = RiskManager(settings.risk_config())
    simulator = Simulator(registry, oracle, chain, settings.simulator_config())
    strategy = Strategy(simulator, settings.strategy_config(), risk_manager=risk)
    pathfinder = Pathfinder(registry, settings.pathfinder_config())

    nonces = NonceAllocator(chain, chain.address, call_timeout=settings.rpc_timeout_seconds)
    builder = TxBuilder(
        registry,
        settings.hot_wallet_address or chain.address,
        flash_loan_receiver=settings.flash_loan_receiver,
        tx_deadline_seconds=settings.tx_deadline_seconds,
        call_timeout=settings.rpc_timeout_seconds,
    )
    executor = Executor(builder, chain, nonces, gas, settings.executor_config())

    watcher = Watcher(
        pathfinder=pathfinder,
        simulator=simulator,
        strategy=strategy,
        risk=risk,
        executor=executor,
        chain=chain,
        gas=gas,
        ledger=StructlogLedger(),
        config=settings.watcher_config(),
    )
    return watcher, gas


async def main() -> None:
    settings = ArbSettings()
    configure_logging(json_output=settings.log_json, level=settings.log_level)
    log.info(
        "arbitrage.starting",
        mode=settings.executor_mode,
        venues=settings.dex_list,
        chain_id=settings.chain_id,
    )

    watcher, gas = build_watcher(settings)

    app = FastAPI(title="Polygon Arbitrage Control")
    app.include_router(create_control_router(watcher))
    server = uvicorn.Server(
        uvicorn.Config(app, host="0.0.0.0", port=settings.control_api_port, log_level="warning")
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    await gas.refresh()
    gas.start()
    await watcher.start()
    api_task = asyncio.create_task(server.serve(), name="control-api")
    try:
        await stop.wait()
    finally:
        log.info("arbitrage.shutting_down")
        server.should_exit = True
        await watcher.stop()
        await gas.stop()
        await api_task
        log.info("arbitrage.stopped", **watcher.performance_metrics())


if __name__ == "__main__":
    asyncio.run(main())
