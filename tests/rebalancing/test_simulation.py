import asyncio

import pytest

from rebalancing.config import SimulationDefaults
from rebalancing.models import ExecutionParams, RebalancingOperation, Transaction, TransactionType
from rebalancing.simulation import Simulator, expected_slippage
from services.pricing import StaticPriceSource
from services.protocols import AdapterRegistry, GasEstimate, PaperExecutionAdapter


def _tx(index=0, amount=3000.0, **overrides) -> Transaction:
    values = dict(
        index=index,
        type=TransactionType.SWAP,
        from_asset="ETH",
        to_asset="USDC",
        from_amount_usd=amount,
        to_amount_usd=amount,
    )
    values.update(overrides)
    return Transaction(**values)


def _operation(*transactions, total=10_000.0) -> RebalancingOperation:
    return RebalancingOperation(
        id="op-1",
        user="alice",
        strategy_id="s1",
        current_allocation=[],
        target_allocation=[],
        total_value=total,
        transactions=list(transactions),
    )


class _BrokenEstimates(PaperExecutionAdapter):
    async def estimate_gas(self, request):
        raise ConnectionError("rpc down")


class _ExpensiveGas(PaperExecutionAdapter):
    async def estimate_gas(self, request):
        return GasEstimate(gas_limit=100_000, gas_price_wei=int(200e9))


@pytest.mark.parametrize(
    "amount, expected",
    [(500, 0.001), (5_000, 0.003), (50_000, 0.005), (500_000, 0.01)],
)
def test_expected_slippage_bands(amount, expected):
    assert expected_slippage(_tx(amount=amount), 5.0) == expected


def test_expected_slippage_is_capped_and_zero_for_deposits():
    assert expected_slippage(_tx(amount=500_000), 0.5) == 0.005
    assert expected_slippage(_tx(type=TransactionType.DEPOSIT), 5.0) == 0.0


def test_defaults_apply_without_adapter():
    simulator = Simulator(defaults=SimulationDefaults(gas_price_gwei=50, native_price_usd=2000))
    operation = _operation(_tx())

    result = asyncio.run(simulator.simulate(operation, ExecutionParams(max_slippage_pct=1.0)))

    assert result.result == "success"
    assert result.expected_gas_cost_usd == pytest.approx(200_000 * 50e9 / 1e18 * 2000)
    assert result.expected_slippage == pytest.approx(0.003)
    assert result.slippage_cost == pytest.approx(30.0)
    assert result.portfolio_value_after == pytest.approx(10_000 - 20.0 - 30.0)
    assert result.estimated_duration_s == 30.0
    assert operation.transactions[0].slippage.expected == pytest.approx(0.003)


def test_native_price_comes_from_price_source():
    simulator = Simulator(prices=StaticPriceSource({"ETH": 4000}))

    result = asyncio.run(simulator.simulate(_operation(_tx()), ExecutionParams()))

    assert result.expected_gas_cost_usd == pytest.approx(200_000 * 50e9 / 1e18 * 4000)


def test_adapter_estimate_is_preferred():
    registry = AdapterRegistry(default=PaperExecutionAdapter(gas_price_gwei=10, native_price_usd=1000))

    result = asyncio.run(Simulator(registry=registry).simulate(_operation(_tx()), ExecutionParams()))

    assert result.expected_gas_cost_usd == pytest.approx(200_000 * 10e9 / 1e18 * 1000)
    assert result.details[0]["gas_price_gwei"] == pytest.approx(10)


def test_failed_estimate_warns_and_falls_back():
    registry = AdapterRegistry(default=_BrokenEstimates())

    result = asyncio.run(Simulator(registry=registry).simulate(_operation(_tx()), ExecutionParams()))

    assert result.result == "partial"
    assert any("using defaults" in warning for warning in result.warnings)
    assert result.details[0]["gas_limit"] == 200_000


def test_gas_price_limit_and_cross_chain_warnings():
    registry = AdapterRegistry(default=_ExpensiveGas())
    operation = _operation(_tx(from_chain="ethereum", to_chain="arbitrum", from_asset="ethereum", to_asset="arbitrum"))

    result = asyncio.run(Simulator(registry=registry).simulate(operation, ExecutionParams(max_gas_price_gwei=100)))

    assert result.result == "partial"
    assert len(result.warnings) == 2
    assert result.estimated_duration_s == 30.0 + 300.0


def test_invalid_transactions_fail_the_simulation():
    operation = _operation(_tx(), _tx(index=1, amount=0), _tx(index=2, to_asset="ETH"))

    result = asyncio.run(Simulator().simulate(operation, ExecutionParams()))

    assert result.blocking
    assert len(result.errors) == 2
    assert [detail.get("error", {}).get("code") for detail in result.details] == [
        None,
        "SIMULATION_ERROR",
        "SIMULATION_ERROR",
    ]
