# Enterprise Autopilot - 能力生命周期状态机
"""
能力生命周期

状态流转:
SEEDED   → TRIAL       触发阈值满足
PROPOSED → TRIAL       低风险自动试用 / 人工审批通过
TRIAL    → ACTIVE      试用到期，有执行证据且正面结果多于负面
TRIAL    → DEPRECATED  试用到期，证据不足或结果不佳
ACTIVE   → DEPRECATED  激活后 ≥14 天负面结果超过正面两倍，或 30 天未使用

没有跳过 TRIAL 的转移。每次转移写入审计事件 capability_transition。
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog

from engine.audit import AuditLogger
from engine.errors import InvalidTransitionError
from engine.models import Capability, CapabilityStatus, MemoryEntry, OutcomeEvaluation
from engine.settings import AutopilotSettings
from storage.base import POST_SOURCES, DataStore

logger = structlog.get_logger()


# ============================================
# 状态转移规则
# ============================================

@dataclass
class Transition:
    """状态转移定义"""
    from_state: CapabilityStatus
    to_state: CapabilityStatus
    trigger: str


TRANSITIONS: list[Transition] = [
    Transition(CapabilityStatus.SEEDED, CapabilityStatus.TRIAL, "triggers_met"),
    Transition(CapabilityStatus.PROPOSED, CapabilityStatus.TRIAL, "auto_trial"),
    Transition(CapabilityStatus.PROPOSED, CapabilityStatus.TRIAL, "approved"),
    Transition(CapabilityStatus.TRIAL, CapabilityStatus.ACTIVE, "trial_succeeded"),
    Transition(CapabilityStatus.TRIAL, CapabilityStatus.DEPRECATED, "trial_failed"),
    Transition(CapabilityStatus.ACTIVE, CapabilityStatus.DEPRECATED, "performance_reversal"),
    Transition(CapabilityStatus.ACTIVE, CapabilityStatus.DEPRECATED, "unused"),
]

TRANSITION_MAP: dict[tuple[CapabilityStatus, str], Transition] = {
    (t.from_state, t.trigger): t for t in TRANSITIONS
}

EVALUATED = [OutcomeEvaluation.POSITIVE, OutcomeEvaluation.NEGATIVE, OutcomeEvaluation.NEUTRAL]


def attributed_entries(capability: Capability, entries: list[MemoryEntry]) -> list[MemoryEntry]:
    """归属到能力的记忆

    带 capability_code 的记忆只归属该能力；
    不带的按决策类型归属，可能同时计入多个能力。
    """
    result = []
    for entry in entries:
        if entry.capability_code:
            if entry.capability_code == capability.capability_code:
                result.append(entry)
        elif entry.decision_type in capability.decision_types:
            result.append(entry)
    return result


def count_outcomes(entries: list[MemoryEntry]) -> tuple[int, int]:
    positives = sum(1 for e in entries if e.outcome_evaluation == OutcomeEvaluation.POSITIVE)
    negatives = sum(1 for e in entries if e.outcome_evaluation == OutcomeEvaluation.NEGATIVE)
    return positives, negatives


class CapabilityLifecycle:
    """能力生命周期管理"""

    def __init__(self, store: DataStore, audit: AuditLogger, settings: AutopilotSettings):
        self.store = store
        self.audit = audit
        self.settings = settings

    async def transition(
        self,
        capability: Capability,
        trigger: str,
        reason: str,
        now: Optional[datetime] = None,
        cycle_id: Optional[str] = None,
    ) -> dict:
        """执行状态转移

        Raises:
            InvalidTransitionError: 当前状态不允许该触发
        """
        rule = TRANSITION_MAP.get((capability.status, trigger))
        if rule is None:
            raise InvalidTransitionError(capability.capability_code, capability.status.value, trigger)

        now = now or datetime.utcnow()
        from_state = capability.status
        capability.status = rule.to_state
        capability.updated_at = now

        if rule.to_state == CapabilityStatus.TRIAL:
            capability.trial_started_at = now
            capability.trial_expires_at = now + timedelta(days=self.settings.trial_days)
        elif rule.to_state == CapabilityStatus.ACTIVE:
            capability.activated_at = now
            capability.activation_reason = reason
            capability.last_evaluated_at = now
        elif rule.to_state == CapabilityStatus.DEPRECATED:
            capability.deactivated_at = now
            capability.deactivation_reason = reason

        await self.store.save_capability(capability)
        await self.audit.record(
            company_id=capability.company_id,
            department=capability.department,
            cycle_id=cycle_id,
            event_type="capability_transition",
            target_type="capability",
            target_id=capability.id,
            details={
                "capability_code": capability.capability_code,
                "from": from_state.value,
                "to": rule.to_state.value,
                "trigger": trigger,
                "reason": reason,
            },
        )

        logger.info(
            "能力状态转移",
            capability=capability.capability_code,
            from_state=from_state.value,
            to_state=rule.to_state.value,
            reason=reason,
        )
        return {
            "capability_code": capability.capability_code,
            "from": from_state.value,
            "to": rule.to_state.value,
            "reason": reason,
        }

    # ============================================
    # 种子能力触发
    # ============================================

    async def _trigger_counts(self, company_id: str, condition: dict) -> dict:
        counts = {}
        if condition.get("min_deals"):
            counts["min_deals"] = await self.store.count_records("crm_deals", company_id)
        if condition.get("min_contacts"):
            counts["min_contacts"] = await self.store.count_records("crm_contacts", company_id)
        if condition.get("min_posts"):
            total = 0
            for source in POST_SOURCES.values():
                total += await self.store.count_records(source, company_id)
            counts["min_posts"] = total
        if condition.get("min_agent_executions"):
            counts["min_agent_executions"] = await self.store.count_records("agent_usage_log", company_id)
        return counts

    async def evaluate_seeded(self, company_id: str, now: Optional[datetime] = None) -> list[dict]:
        """任一阈值满足的种子能力进入试用"""
        seeded = await self.store.list_capabilities(company_id, statuses=[CapabilityStatus.SEEDED])
        transitions = []
        for capability in seeded:
            condition = capability.trigger_condition or {}
            counts = await self._trigger_counts(company_id, condition)
            met = [key for key, value in counts.items() if value >= condition[key]]
            if met:
                reason = f"Trigger conditions met: {', '.join(f'{k}={counts[k]}' for k in met)}"
                transitions.append(await self.transition(capability, "triggers_met", reason, now))
        return transitions

    # ============================================
    # 周期内管理
    # ============================================

    async def manage(
        self,
        company_id: str,
        department: Optional[str] = None,
        now: Optional[datetime] = None,
        cycle_id: Optional[str] = None,
    ) -> list[dict]:
        """试用到期裁决、激活后回退、未使用退役"""
        now = now or datetime.utcnow()
        capabilities = await self.store.list_capabilities(
            company_id, department, statuses=[CapabilityStatus.TRIAL, CapabilityStatus.ACTIVE],
        )
        if not capabilities:
            return []

        memory_cache: dict[str, list[MemoryEntry]] = {}
        transitions = []
        for capability in capabilities:
            if capability.department not in memory_cache:
                memory_cache[capability.department] = await self.store.list_memory_entries(
                    company_id, capability.department, outcomes=EVALUATED,
                )
            entries = attributed_entries(capability, memory_cache[capability.department])

            if capability.status == CapabilityStatus.TRIAL:
                result = await self._resolve_trial(capability, entries, now, cycle_id)
            else:
                result = await self._review_active(capability, entries, now, cycle_id)
            if result:
                transitions.append(result)
        return transitions

    async def _resolve_trial(
        self,
        capability: Capability,
        entries: list[MemoryEntry],
        now: datetime,
        cycle_id: Optional[str],
    ) -> Optional[dict]:
        if capability.trial_expires_at is None or now < capability.trial_expires_at:
            return None

        # 只有试用期内产生的记忆才算试用证据
        if capability.trial_started_at is not None:
            entries = [e for e in entries if e.created_at >= capability.trial_started_at]

        positives, negatives = count_outcomes(entries)
        has_evidence = capability.execution_count > 0 or bool(entries)

        if has_evidence and positives > negatives:
            reason = (
                f"Trial succeeded: {positives} positive vs {negatives} negative outcomes, "
                f"{capability.execution_count} executions"
            )
            return await self.transition(capability, "trial_succeeded", reason, now, cycle_id)

        if not has_evidence:
            reason = "Trial expired without executions or evaluated outcomes"
        else:
            reason = f"Trial outcomes not favorable: {positives} positive vs {negatives} negative"
        return await self.transition(capability, "trial_failed", reason, now, cycle_id)

    async def _review_active(
        self,
        capability: Capability,
        entries: list[MemoryEntry],
        now: datetime,
        cycle_id: Optional[str],
    ) -> Optional[dict]:
        activated_at = capability.activated_at or capability.created_at
        if (
            capability.execution_count == 0
            and now - activated_at >= timedelta(days=self.settings.unused_capability_days)
        ):
            return await self.transition(capability, "unused", "unused", now, cycle_id)

        last = capability.last_evaluated_at or activated_at
        if now - last < timedelta(days=self.settings.reversal_window_days):
            return None

        positives, negatives = count_outcomes(entries)
        if negatives > 2 * positives:
            reason = f"Performance reversal: {negatives} negative vs {positives} positive outcomes"
            return await self.transition(capability, "performance_reversal", reason, now, cycle_id)

        capability.last_evaluated_at = now
        capability.updated_at = now
        await self.store.save_capability(capability)
        return None
