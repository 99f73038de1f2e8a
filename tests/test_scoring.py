"""优先级评分测试"""

import pytest

from engine.models import Priority
from engine.scoring import (
    DEFAULT_IMPACT,
    evidence_score,
    impact_score,
    rank_decisions,
    score_decision,
    strategic_score,
)


class TestImpactScore:

    def test_percentage_string(self):
        assert impact_score({"estimated_change": "+15%"}) == 75

    def test_negative_change_uses_magnitude(self):
        assert impact_score({"estimated_change": "-4%"}) == 20

    def test_numeric_value(self):
        assert impact_score({"estimated_change": 8}) == 40

    def test_capped_at_100(self):
        assert impact_score({"estimated_change": "+300%"}) == 100

    def test_missing_or_unparseable(self):
        assert impact_score({}) == DEFAULT_IMPACT
        assert impact_score({"estimated_change": "significant"}) == DEFAULT_IMPACT


def test_strategic_score_by_reasoning_length():
    assert strategic_score("x" * 101) == 70
    assert strategic_score("x" * 60) == 50
    assert strategic_score("short") == 30
    assert strategic_score("") == 30


def test_evidence_score(make_decision):
    assert evidence_score(make_decision(external_signal_influence=True)) == 80
    assert evidence_score(make_decision(action_parameters={"channel": "instagram"})) == 60
    assert evidence_score(make_decision()) == 30


def test_score_decision_weighted_sum(make_decision):
    decision = make_decision(
        priority=Priority.HIGH,
        expected_impact={"estimated_change": "+10%"},
        reasoning="x" * 60,
    )

    score = score_decision(decision)

    # 0.3*75 + 0.3*50 + 0.2*50 + 0.2*30
    assert score == pytest.approx(53.5)
    assert decision.priority_score == score
    assert decision.score_breakdown["urgency"] == 75
    assert decision.score_breakdown["weights"]["impact"] == 0.3


def test_rank_decisions_sorted_and_stable(make_decision):
    low_a = make_decision("analyze", priority=Priority.LOW, description="a")
    critical = make_decision("publish", priority=Priority.CRITICAL)
    low_b = make_decision("ab_test", priority=Priority.LOW, description="b")

    ranked = rank_decisions([low_a, critical, low_b])

    assert ranked[0] is critical
    assert ranked[1:] == [low_a, low_b]
    assert all(0 <= d.priority_score <= 100 for d in ranked)
