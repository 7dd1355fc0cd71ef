"""
Proactive Investigation Tests

Per-user investigations, case creation, detector isolation and the
sweep timer.
"""

import asyncio
from typing import Optional

import pytest

from savvyshield.detection import (
    BaseInvestigator,
    InvestigationFinding,
    PaymentRiskInvestigator,
    ProactiveInvestigationService,
)
from savvyshield.schemas import EnforcementAction, EventType, InvestigationStatus
from savvyshield.storage import EnforcementQuery, EventQuery


class FixedInvestigator(BaseInvestigator):
    """Returns the same finding for everyone."""

    def __init__(self, store, name: str, score: Optional[float]):
        super().__init__(store)
        self.name = name
        self.score = score

    async def investigate_user(self, savvy_user_id, app):
        if self.score is None:
            return None
        return self.finding(self.name, self.score, f"{self.name} evidence", 0.9)


class BrokenInvestigator(BaseInvestigator):
    name = "broken"

    async def investigate(self):
        raise RuntimeError("scan exploded")

    async def investigate_user(self, savvy_user_id, app):
        raise RuntimeError("detector exploded")


class SlowInvestigator(BaseInvestigator):
    name = "slow"

    def __init__(self, store, gate: asyncio.Event):
        super().__init__(store)
        self.gate = gate

    async def investigate(self):
        await self.gate.wait()
        return []

    async def investigate_user(self, savvy_user_id, app):
        return None


def _service(memory_store, engine, investigators, **kwargs) -> ProactiveInvestigationService:
    return ProactiveInvestigationService(memory_store, engine, investigators=investigators, **kwargs)


class TestInvestigateUser:

    @pytest.mark.asyncio
    async def test_default_battery_opens_case(self, memory_store, engine, make_event):
        await memory_store.save_event(make_event(savvy_user_id="payer", level="gold", event_type=EventType.PAYMENT_RISK))
        service = ProactiveInvestigationService(memory_store, engine)

        outcome = await service.investigate_user("payer", "final10")

        assert [f.risk_factor for f in outcome.findings] == ["payment_risk"]
        case = outcome.case_event
        assert case.event_type == EventType.PROACTIVE_INVESTIGATION
        assert case.case_id.startswith("proactive_")
        assert case.case_id.endswith("_payer")
        assert case.risk_score == pytest.approx(0.8)
        assert case.confidence_level == 0.8
        assert case.level == "gold"
        assert case.investigation_status == InvestigationStatus.INVESTIGATING
        assert case.context["risk_factors"] == ["payment_risk"]

        # gold @ 0.8 -> high band, mid tier
        assert outcome.result.decision.action == EnforcementAction.TEMP_SUSPEND
        assert outcome.result.enforcement.case_id == case.case_id

        stored = await memory_store.get_event(case.id)
        assert stored is not None

    @pytest.mark.asyncio
    async def test_findings_at_threshold_do_not_open_case(self, memory_store, engine):
        service = _service(memory_store, engine, [FixedInvestigator(memory_store, "vpn_usage", 0.6)])

        outcome = await service.investigate_user("user_1", "final10")

        assert outcome.findings == []
        assert outcome.case_event is None
        assert await memory_store.count_events(EventQuery()) == 0

    @pytest.mark.asyncio
    async def test_case_uses_max_score_and_all_factors(self, memory_store, engine):
        service = _service(memory_store, engine, [
            FixedInvestigator(memory_store, "velocity_spike", 0.65),
            FixedInvestigator(memory_store, "bot_detection", 0.8),
            FixedInvestigator(memory_store, "nothing", None),
        ])

        outcome = await service.investigate_user("user_1", "final10", level="platinum")

        assert outcome.case_event.risk_score == pytest.approx(0.8)
        assert outcome.case_event.risk_factors == ["velocity_spike", "bot_detection"]
        assert outcome.case_event.context["investigation_count"] == 2
        assert outcome.result.decision.action == EnforcementAction.SOFT_RESTRICT

    @pytest.mark.asyncio
    async def test_failing_detector_is_skipped(self, memory_store, engine):
        service = _service(memory_store, engine, [
            BrokenInvestigator(memory_store),
            FixedInvestigator(memory_store, "payment_risk", 0.9),
        ])

        outcome = await service.investigate_user("user_1", "final10")

        assert [f.risk_factor for f in outcome.findings] == ["payment_risk"]
        assert outcome.case_event is not None

    @pytest.mark.asyncio
    async def test_level_falls_back_to_guest(self, memory_store, engine):
        service = _service(memory_store, engine, [FixedInvestigator(memory_store, "x", 0.7)])

        outcome = await service.investigate_user("nobody", "final10")

        assert outcome.case_event.level == "guest"


class TestSweep:

    @pytest.mark.asyncio
    async def test_sweep_investigates_candidates_once(self, memory_store, engine, make_event):
        for user in ("a", "b"):
            await memory_store.save_event(make_event(savvy_user_id=user, event_type=EventType.PAYMENT_RISK))
            await memory_store.save_event(make_event(savvy_user_id=user, event_type=EventType.CHARGEBACK_SIGNAL))
        service = _service(memory_store, engine, [PaymentRiskInvestigator(memory_store)])

        result = await service.run_sweep()

        assert result.candidates == 2
        assert result.investigated == 2
        assert result.cases_opened == 2

    @pytest.mark.asyncio
    async def test_sweep_capped(self, memory_store, engine, make_event):
        for i in range(5):
            await memory_store.save_event(make_event(savvy_user_id=f"u{i}", event_type=EventType.PAYMENT_RISK))
        service = _service(
            memory_store, engine, [PaymentRiskInvestigator(memory_store)], max_users_per_sweep=2
        )

        result = await service.run_sweep()

        assert result.candidates == 5
        assert result.investigated == 2

    @pytest.mark.asyncio
    async def test_repeated_sweeps_open_one_case(self, memory_store, engine, make_event):
        await memory_store.save_event(make_event(savvy_user_id="u1", event_type=EventType.PAYMENT_RISK))
        service = _service(memory_store, engine, [PaymentRiskInvestigator(memory_store)])

        first = await service.run_sweep()
        second = await service.run_sweep()
        await service.run_sweep()

        assert first.cases_opened == 1
        assert second.candidates == 1
        assert second.already_open == 1
        assert second.investigated == 0
        assert await memory_store.count_enforcements(EnforcementQuery(savvy_user_id="u1")) == 1
        cases = await memory_store.count_events(
            EventQuery(savvy_user_id="u1", event_types=[EventType.PROACTIVE_INVESTIGATION])
        )
        assert cases == 1

    @pytest.mark.asyncio
    async def test_open_case_blocks_new_case_after_override(self, memory_store, engine, make_event):
        await memory_store.save_event(make_event(savvy_user_id="u1", event_type=EventType.PAYMENT_RISK))
        service = _service(memory_store, engine, [PaymentRiskInvestigator(memory_store)])
        await service.run_sweep()

        enforcement = (await memory_store.query_enforcements(EnforcementQuery(savvy_user_id="u1")))[0]
        await engine.override(enforcement.id, "analyst_1", "false positive")

        assert await service.has_open_case("u1", "final10") is True
        result = await service.run_sweep()
        assert result.cases_opened == 0

    @pytest.mark.asyncio
    async def test_users_in_other_apps_still_investigated(self, memory_store, engine, make_event):
        await memory_store.save_event(make_event(savvy_user_id="u1", event_type=EventType.PAYMENT_RISK))
        service = _service(memory_store, engine, [PaymentRiskInvestigator(memory_store)])
        await service.run_sweep()

        assert await service.has_open_case("u1", "gamesavvy") is False
        assert await service.has_open_case("u2", "final10") is False

    @pytest.mark.asyncio
    async def test_failing_scan_does_not_stop_sweep(self, memory_store, engine, make_event):
        await memory_store.save_event(make_event(event_type=EventType.PAYMENT_RISK))
        service = _service(memory_store, engine, [BrokenInvestigator(memory_store), PaymentRiskInvestigator(memory_store)])

        result = await service.run_sweep()

        assert result.candidates == 1
        assert result.cases_opened == 1

    @pytest.mark.asyncio
    async def test_overlapping_sweep_skipped(self, memory_store, engine):
        gate = asyncio.Event()
        service = _service(memory_store, engine, [SlowInvestigator(memory_store, gate)])

        first = asyncio.create_task(service.run_sweep())
        await asyncio.sleep(0)
        assert service.sweep_in_flight

        assert await service.run_sweep() is None

        gate.set()
        assert (await first) is not None
        assert not service.sweep_in_flight

    @pytest.mark.asyncio
    async def test_start_and_stop(self, memory_store, engine):
        service = _service(memory_store, engine, [], interval_seconds=3600)

        assert service.start() is True
        assert service.start() is False
        assert service.is_running

        await asyncio.sleep(0)
        assert service.stop() is True
        assert service.stop() is False
        assert not service.is_running
        await service.wait_idle()
