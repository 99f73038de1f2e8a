"""能力生命周期测试"""

from datetime import timedelta

import pytest

from engine.errors import InvalidTransitionError
from engine.lifecycle import (
    TRANSITIONS,
    CapabilityLifecycle,
    attributed_entries,
    count_outcomes,
)
from engine.models import Capability, CapabilityStatus, MemoryEntry, OutcomeEvaluation


@pytest.fixture
def lifecycle(store, audit, settings) -> CapabilityLifecycle:
    return CapabilityLifecycle(store, audit, settings)


def capability(status=CapabilityStatus.TRIAL, **kwargs) -> Capability:
    kwargs.setdefault("capability_code", "pipeline_watch")
    kwargs.setdefault("decision_types", ["alert_stalled"])
    return Capability(company_id="company-1", department="sales", status=status, **kwargs)


def outcomes(positive: int, negative: int, decision_type="alert_stalled", **kwargs) -> list[MemoryEntry]:
    result = []
    for evaluation, count in ((OutcomeEvaluation.POSITIVE, positive), (OutcomeEvaluation.NEGATIVE, negative)):
        result += [
            MemoryEntry(
                company_id="company-1",
                department="sales",
                decision_type=decision_type,
                outcome_evaluation=evaluation,
                **kwargs,
            )
            for _ in range(count)
        ]
    return result


class TestTransitionTable:

    def test_active_only_reachable_from_trial(self):
        sources = {t.from_state for t in TRANSITIONS if t.to_state == CapabilityStatus.ACTIVE}
        assert sources == {CapabilityStatus.TRIAL}

    def test_deprecated_is_terminal(self):
        assert not [t for t in TRANSITIONS if t.from_state == CapabilityStatus.DEPRECATED]

    async def test_proposed_cannot_jump_to_active(self, lifecycle, store):
        cap = capability(CapabilityStatus.PROPOSED)
        await store.insert_capability(cap)

        with pytest.raises(InvalidTransitionError):
            await lifecycle.transition(cap, "trial_succeeded", "skip trial")

        assert (await store.get_capability(cap.id)).status == CapabilityStatus.PROPOSED

    async def test_transition_records_audit_event(self, lifecycle, store, now):
        cap = capability(CapabilityStatus.PROPOSED)
        await store.insert_capability(cap)

        result = await lifecycle.transition(cap, "approved", "signed off", now, cycle_id="cycle-1")

        assert result == {"capability_code": "pipeline_watch", "from": "proposed", "to": "trial", "reason": "signed off"}
        saved = await store.get_capability(cap.id)
        assert saved.trial_started_at == now
        assert saved.trial_expires_at == now + timedelta(days=7)
        [event] = store.audit_events
        assert event.event_type == "capability_transition"
        assert event.target_id == cap.id
        assert event.details["trigger"] == "approved"


class TestAttribution:

    def test_capability_code_is_exclusive(self):
        a = capability(capability_code="a", decision_types=["alert_stalled"])
        b = capability(capability_code="b", decision_types=["alert_stalled"])
        tagged = outcomes(1, 0, capability_code="a")
        untagged = outcomes(1, 0)

        assert attributed_entries(a, tagged + untagged) == tagged + untagged
        assert attributed_entries(b, tagged + untagged) == untagged

    def test_count_outcomes(self):
        assert count_outcomes(outcomes(3, 2)) == (3, 2)


class TestSeeded:

    async def test_any_threshold_moves_to_trial(self, lifecycle, store, now):
        cap = capability(
            CapabilityStatus.SEEDED, source="seeded",
            trigger_condition={"min_deals": 2, "min_contacts": 50},
        )
        await store.insert_capability(cap)
        store.add_records("crm_deals", [{"company_id": "company-1"}, {"company_id": "company-1"}])

        [transition] = await lifecycle.evaluate_seeded("company-1", now)

        assert transition["to"] == "trial"
        assert transition["reason"] == "Trigger conditions met: min_deals=2"
        assert (await store.get_capability(cap.id)).status == CapabilityStatus.TRIAL

    async def test_unmet_stays_seeded(self, lifecycle, store, now):
        cap = capability(CapabilityStatus.SEEDED, trigger_condition={"min_posts": 10})
        await store.insert_capability(cap)
        store.add_records("instagram_posts", [{"company_id": "company-1"} for _ in range(9)])

        assert await lifecycle.evaluate_seeded("company-1", now) == []
        assert (await store.get_capability(cap.id)).status == CapabilityStatus.SEEDED


class TestTrial:

    async def test_trial_success_activates(self, lifecycle, store, now):
        cap = capability(execution_count=5, trial_expires_at=now - timedelta(hours=1))
        await store.insert_capability(cap)
        await store.insert_memory_entries(outcomes(4, 1))

        [transition] = await lifecycle.manage("company-1", now=now)

        assert transition["to"] == "active"
        saved = await store.get_capability(cap.id)
        assert saved.status == CapabilityStatus.ACTIVE
        assert saved.activated_at == now
        assert "4 positive vs 1 negative" in saved.activation_reason

    async def test_outcomes_before_trial_are_not_evidence(self, lifecycle, store, now):
        cap = capability(
            trial_started_at=now - timedelta(days=8),
            trial_expires_at=now - timedelta(days=1),
        )
        await store.insert_capability(cap)
        await store.insert_memory_entries(outcomes(3, 0, created_at=now - timedelta(days=40)))

        [transition] = await lifecycle.manage("company-1", now=now)

        assert transition["to"] == "deprecated"
        assert transition["reason"] == "Trial expired without executions or evaluated outcomes"

    async def test_outcomes_inside_trial_window_activate(self, lifecycle, store, now):
        cap = capability(
            trial_started_at=now - timedelta(days=8),
            trial_expires_at=now - timedelta(days=1),
        )
        await store.insert_capability(cap)
        await store.insert_memory_entries(
            outcomes(3, 0, created_at=now - timedelta(days=40))
            + outcomes(2, 1, created_at=now - timedelta(days=3))
        )

        [transition] = await lifecycle.manage("company-1", now=now)

        assert transition["to"] == "active"
        assert "2 positive vs 1 negative" in transition["reason"]

    async def test_trial_not_expired_is_left_alone(self, lifecycle, store, now):
        cap = capability(execution_count=5, trial_expires_at=now + timedelta(days=2))
        await store.insert_capability(cap)
        await store.insert_memory_entries(outcomes(4, 0))

        assert await lifecycle.manage("company-1", now=now) == []

    async def test_trial_without_evidence_is_deprecated(self, lifecycle, store, now):
        cap = capability(trial_expires_at=now - timedelta(hours=1))
        await store.insert_capability(cap)

        [transition] = await lifecycle.manage("company-1", now=now)

        assert transition["to"] == "deprecated"
        assert (await store.get_capability(cap.id)).deactivation_reason.startswith("Trial expired without")

    async def test_trial_with_bad_outcomes_is_deprecated(self, lifecycle, store, now):
        cap = capability(execution_count=3, trial_expires_at=now - timedelta(hours=1))
        await store.insert_capability(cap)
        await store.insert_memory_entries(outcomes(1, 1))

        [transition] = await lifecycle.manage("company-1", now=now)

        assert transition["to"] == "deprecated"


class TestActive:

    async def test_unused_capability_is_retired(self, lifecycle, store, now):
        cap = capability(CapabilityStatus.ACTIVE, activated_at=now - timedelta(days=31))
        await store.insert_capability(cap)

        [transition] = await lifecycle.manage("company-1", now=now)

        assert transition["reason"] == "unused"
        assert (await store.get_capability(cap.id)).status == CapabilityStatus.DEPRECATED

    async def test_performance_reversal(self, lifecycle, store, now):
        cap = capability(
            CapabilityStatus.ACTIVE, execution_count=5,
            activated_at=now - timedelta(days=20), last_evaluated_at=now - timedelta(days=15),
        )
        await store.insert_capability(cap)
        await store.insert_memory_entries(outcomes(1, 3))

        [transition] = await lifecycle.manage("company-1", now=now)

        assert transition["to"] == "deprecated"
        assert transition["reason"].startswith("Performance reversal")

    async def test_reversal_waits_for_window(self, lifecycle, store, now):
        cap = capability(
            CapabilityStatus.ACTIVE, execution_count=5,
            activated_at=now - timedelta(days=20), last_evaluated_at=now - timedelta(days=3),
        )
        await store.insert_capability(cap)
        await store.insert_memory_entries(outcomes(0, 5))

        assert await lifecycle.manage("company-1", now=now) == []

    async def test_healthy_capability_is_re_evaluated(self, lifecycle, store, now):
        cap = capability(
            CapabilityStatus.ACTIVE, execution_count=5,
            activated_at=now - timedelta(days=20), last_evaluated_at=now - timedelta(days=15),
        )
        await store.insert_capability(cap)
        await store.insert_memory_entries(outcomes(2, 3))

        assert await lifecycle.manage("company-1", now=now) == []
        saved = await store.get_capability(cap.id)
        assert saved.status == CapabilityStatus.ACTIVE
        assert saved.last_evaluated_at == now
