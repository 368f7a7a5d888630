"""Command line entry point for the rebalancing HTTP service."""

from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping, Optional

from services.pricing import CcxtPriceSource, PriceSource
from services.protocols import AdapterRegistry, CcxtSwapAdapter, PaperExecutionAdapter, create_exchange_client

from .audit import build_ledger
from .config import EngineConfig, Settings
from .configuration import load_engine_config
from .repository import FileRepository
from .service import RebalancingService

if TYPE_CHECKING:  # pragma: no cover - used only for type hints
    import uvicorn

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = Path("state")


def _import_uvicorn() -> "uvicorn":
    """Import :mod:`uvicorn` with a helpful error message when missing."""

    try:
        import uvicorn  # type: ignore[import]
    except ModuleNotFoundError as exc:  # pragma: no cover - depends on runtime environment
        raise ModuleNotFoundError(
            "The 'uvicorn' package is required to run the rebalancing web server."
        ) from exc
    return uvicorn


def _exchange_credentials(env: Mapping[str, str]) -> dict:
    return {
        "apiKey": env.get("REBALANCER_EXCHANGE_API_KEY"),
        "secret": env.get("REBALANCER_EXCHANGE_SECRET"),
        "password": env.get("REBALANCER_EXCHANGE_PASSWORD"),
    }


def build_service(
    config: EngineConfig,
    *,
    exchange_id: Optional[str] = None,
    exchange_chains: tuple = ("cex",),
    env: Optional[Mapping[str, str]] = None,
) -> RebalancingService:
    """Assemble a file-backed service routed through CCXT or the paper adapter."""

    env = env if env is not None else os.environ
    state_dir = config.state_dir or DEFAULT_STATE_DIR
    audit = config.audit
    # The repository and the service append to the same ledger instance.
    ledger = build_ledger(audit.log_path, enabled=audit.enabled, redact_fields=audit.redact_fields, s3=audit.s3)
    repository = FileRepository(state_dir, ledger=ledger)
    prices: Optional[PriceSource] = None
    if exchange_id:
        client: Any = create_exchange_client(exchange_id, _exchange_credentials(env))
        registry = AdapterRegistry(default=CcxtSwapAdapter(client, chains=exchange_chains))
        prices = CcxtPriceSource(client)
    else:
        registry = AdapterRegistry(default=PaperExecutionAdapter())
    logger.info(
        "Rebalancing service ready",
        extra={"state_dir": str(state_dir), "adapter": exchange_id or "paper"},
    )
    return RebalancingService(repository, config=config, registry=registry, prices=prices, ledger=ledger)


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Launch the rebalancing HTTP API")
    parser.add_argument("--config", type=Path, required=True, help="Path to the engine configuration file")
    parser.add_argument("--host", default="0.0.0.0", help="Host address for the web server")
    parser.add_argument("--port", type=int, default=8000, help="Port for the web server")
    parser.add_argument(
        "--exchange",
        help="CCXT exchange id used to route swaps. Without it transfers are paper-traded.",
    )
    parser.add_argument(
        "--exchange-chains",
        default="cex",
        help="Comma separated chain names the exchange adapter accepts",
    )
    parser.add_argument(
        "--trigger-interval",
        type=float,
        default=None,
        help="Evaluate threshold and periodic triggers every N seconds",
    )
    args = parser.parse_args(argv)

    config = Settings.from_environment(engine=load_engine_config(args.config)).engine
    chains = tuple(chain.strip() for chain in args.exchange_chains.split(",") if chain.strip())
    service = build_service(config, exchange_id=args.exchange, exchange_chains=chains)

    from .api import create_app  # imported lazily to avoid heavy dependencies at import time

    app = create_app(service, trigger_interval=args.trigger_interval)
    uvicorn = _import_uvicorn()
    uvicorn.run(app, host=args.host, port=args.port, log_level="debug" if config.debug > 1 else "info")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()
