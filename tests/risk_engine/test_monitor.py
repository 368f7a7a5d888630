import asyncio
import dataclasses

from risk_engine.monitor import RiskChangeMonitor
from risk_engine.scoring import RiskScoringEngine
from risk_engine.types import Opportunity, ProtocolProfile, SubjectType


def _protocol(**overrides) -> ProtocolProfile:
    base = ProtocolProfile(
        id="aave",
        name="Aave",
        category="lending",
        tvl_usd=2_000_000_000,
        audited=True,
        audit_links=("a", "b", "c"),
    )
    return dataclasses.replace(base, **overrides)


def test_first_scan_only_records_baseline():
    monitor = RiskChangeMonitor(RiskScoringEngine())

    assert asyncio.run(monitor.scan(protocols=[_protocol()])) == []


def test_tier_change_is_reported_to_listener():
    received = []

    async def listener(change):
        received.append(change)

    monitor = RiskChangeMonitor(RiskScoringEngine(), listener=listener)

    async def run():
        await monitor.scan(protocols=[_protocol()])
        return await monitor.scan(protocols=[_protocol(audited=False)])

    changes = asyncio.run(run())

    assert len(changes) == 1
    change = changes[0]
    assert change.subject_type is SubjectType.PROTOCOL
    assert change.protocol_id == "aave"
    assert (change.previous_tier, change.current_tier) == ("low", "medium")
    assert change.direction == "increased"
    assert received == changes


def test_unchanged_tier_is_quiet_and_listener_errors_are_contained():
    async def listener(change):
        raise RuntimeError("boom")

    monitor = RiskChangeMonitor(RiskScoringEngine(), listener=listener)
    opportunity = Opportunity(id="pool", protocol_id="aave", apy=4.0, tvl_usd=50_000_000)

    async def run():
        await monitor.scan(opportunities=[opportunity])
        same = await monitor.scan(opportunities=[opportunity])
        riskier = dataclasses.replace(opportunity, apy=90.0, tvl_usd=1_000, type="lp", assets=("APE", "ETH"))
        await monitor.scan(opportunities=[riskier])
        return same

    assert asyncio.run(run()) == []
