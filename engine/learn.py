# Enterprise Autopilot - 学习阶段
"""
Learn 阶段

1. 原样持久化本周期所有决策（含评分明细）
2. 已执行的决策生成 pending 记忆
3. 冷却期（7 天）后评估 pending 记忆，按部门指标打分:
   - marketing: 决策后帖子的平均互动 vs 决策前
   - sales: 决策后商机/联系人/活动的更新数
   - finance: 决策前后的日均点数消耗
   - legal: 决策后 legal_* 参数更新数
   - hr: 决策后新成员与 hr_* 参数更新数
   - operations: 决策后任务完成率 - 执行器失败率
   每条记忆只评估一次（条件更新）
4. 模式提取: 同类型 ≥3 条 positive 记忆交给 LLM 压缩为 1-3 条规则
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog

from agents.llm import LLMClient
from engine.errors import AutopilotError
from engine.memory import context_hash
from engine.models import (
    Decision,
    Department,
    MemoryEntry,
    OutcomeEvaluation,
    SenseSnapshot,
)
from engine.parsing import extract_json_array
from engine.sense import ENGAGEMENT_FIELDS
from engine.settings import AutopilotSettings
from storage.base import POST_SOURCES, DataStore

logger = structlog.get_logger()


POSITIVE_THRESHOLD = 0.2
NEGATIVE_THRESHOLD = -0.2
STRONG_NEGATIVE = -0.5

MAX_RULES = 3


def clamp(value: float) -> float:
    return max(-1.0, min(1.0, value))


def classify(score: float) -> OutcomeEvaluation:
    if score >= POSITIVE_THRESHOLD:
        return OutcomeEvaluation.POSITIVE
    if score <= NEGATIVE_THRESHOLD:
        return OutcomeEvaluation.NEGATIVE
    return OutcomeEvaluation.NEUTRAL


@dataclass
class LearnSummary:
    decisions_stored: int = 0
    memory_entries: int = 0
    evaluated: int = 0
    rules_extracted: int = 0


# ============================================
# 结果评估
# ============================================

class OutcomeEvaluator:
    """部门专属结果评估"""

    def __init__(self, store: DataStore, settings: AutopilotSettings):
        self.store = store
        self.settings = settings

    async def score(self, entry: MemoryEntry, now: datetime) -> tuple[float, str]:
        """计算记忆的结果分数

        Returns:
            (score ∈ [-1, 1], 指标说明)
        """
        since = entry.created_at
        department = entry.department
        company_id = entry.company_id

        if department == Department.MARKETING.value:
            before_since = since - (now - since)
            after, before = [], []
            for platform, source in POST_SOURCES.items():
                like_field, comment_field = ENGAGEMENT_FIELDS[platform]
                for post in await self.store.fetch_records(source, company_id, since=before_since):
                    value = (post.get(like_field) or 0) + (post.get(comment_field) or 0)
                    (after if post["created_at"] >= since else before).append(value)
            if not after:
                return 0.0, "no posts created since the decision"
            after_avg = sum(after) / len(after)
            before_avg = sum(before) / len(before) if before else 0
            change = (after_avg - before_avg) / max(before_avg, 1)
            return clamp(change), f"avg engagement {before_avg:.1f} -> {after_avg:.1f}"

        if department == Department.SALES.value:
            updates = (
                await self.store.count_records("crm_deals", company_id, since=since, time_field="updated_at")
                + await self.store.count_records("crm_contacts", company_id, since=since, time_field="updated_at")
                + await self.store.count_records("crm_activities", company_id, since=since)
            )
            if updates == 0:
                return -0.3, "no deal or contact activity since the decision"
            return clamp(updates / 10), f"{updates} deal/contact updates since the decision"

        if department == Department.FINANCE.value:
            window = now - since
            after = await self.store.sum_credits(company_id, since=since)
            total = await self.store.sum_credits(company_id, since=since - window)
            before = total - after
            if before == 0 and after == 0:
                return 0.0, "no credit consumption around the decision"
            change = (before - after) / max(before, 1)
            return clamp(change), f"credit burn {before} -> {after}"

        if department == Department.LEGAL.value:
            updates = await self.store.count_records(
                "company_parameters", company_id, since=since, time_field="updated_at", key_prefix="legal_",
            )
            if updates == 0:
                return 0.0, "no legal parameter updates since the decision"
            return clamp(0.2 + 0.1 * updates), f"{updates} legal parameter updates"

        if department == Department.HR.value:
            updates = (
                await self.store.count_records("company_members", company_id, since=since, time_field="joined_at")
                + await self.store.count_records(
                    "company_parameters", company_id, since=since, time_field="updated_at", key_prefix="hr_",
                )
            )
            if updates == 0:
                return 0.0, "no new members or HR parameter updates"
            return clamp(0.2 + 0.1 * updates), f"{updates} HR updates since the decision"

        if department == Department.OPERATIONS.value:
            tasks = await self.store.fetch_records("workforce_tasks", company_id, since=since)
            usage = await self.store.fetch_records("agent_usage_log", company_id, since=since)
            if not tasks and not usage:
                return 0.0, "no operational activity since the decision"
            completion = sum(1 for t in tasks if t.get("status") == "completed") / len(tasks) if tasks else 0
            failure = sum(1 for u in usage if u.get("status") in ("error", "failed")) / len(usage) if usage else 0
            return clamp(completion - failure), f"completion {completion:.0%}, failure {failure:.0%}"

        return 0.0, "no metric for department"

    async def evaluate_pending(self, company_id: str, department: str, now: Optional[datetime] = None) -> int:
        """评估冷却期已过的 pending 记忆

        Returns:
            本次实际更新的条数
        """
        now = now or datetime.utcnow()
        pending = await self.store.list_memory_entries(
            company_id,
            department,
            outcomes=[OutcomeEvaluation.PENDING],
            created_before=now - timedelta(days=self.settings.memory_cooldown_days),
            limit=self.settings.evaluation_batch_size,
        )

        evaluated = 0
        for entry in pending:
            score, metric = await self.score(entry, now)
            outcome = classify(score)
            lesson = f'Decision "{entry.decision_type}" was {outcome.value}: {metric}.'
            if await self.store.complete_memory_evaluation(entry.id, outcome, round(score, 3), lesson, now):
                evaluated += 1

        if evaluated:
            logger.info("记忆评估", company_id=company_id, department=department, evaluated=evaluated)
        return evaluated


# ============================================
# 学习阶段
# ============================================

class Learner:
    """学习阶段"""

    def __init__(self, store: DataStore, llm: LLMClient, settings: AutopilotSettings):
        self.store = store
        self.llm = llm
        self.settings = settings
        self.evaluator = OutcomeEvaluator(store, settings)

    def seed_memory(self, decisions: list[Decision], snapshot: SenseSnapshot) -> list[MemoryEntry]:
        """已执行的决策生成 pending 记忆"""
        ctx_hash = context_hash(snapshot.department, snapshot)
        return [
            MemoryEntry(
                company_id=d.company_id,
                department=d.department,
                cycle_id=d.cycle_id,
                decision_id=d.id,
                decision_type=d.decision_type,
                capability_code=d.agent_to_execute if d.execution_result == "capability_applied" else None,
                context_summary=(d.reasoning or d.description)[:500],
                context_hash=ctx_hash,
                external_signal_used=d.external_signal_influence,
            )
            for d in decisions
            if d.action_taken
        ]

    async def learn(
        self,
        company_id: str,
        department: str,
        cycle_id: str,
        decisions: list[Decision],
        snapshot: SenseSnapshot,
        now: Optional[datetime] = None,
    ) -> LearnSummary:
        summary = LearnSummary()

        if decisions:
            await self.store.insert_decisions(decisions)
            summary.decisions_stored = len(decisions)

        entries = self.seed_memory(decisions, snapshot)
        if entries:
            await self.store.insert_memory_entries(entries)
            summary.memory_entries = len(entries)

        summary.evaluated = await self.evaluator.evaluate_pending(company_id, department, now)
        summary.rules_extracted = await self.extract_patterns(company_id, department)

        logger.info(
            "学习完成",
            company_id=company_id,
            department=department,
            cycle_id=cycle_id,
            **summary.__dict__,
        )
        return summary

    async def extract_patterns(self, company_id: str, department: str) -> int:
        """同类型 positive 记忆压缩为规则，挂到该组最新的一条上

        Returns:
            新提取的规则数
        """
        positives = await self.store.list_memory_entries(
            company_id, department, outcomes=[OutcomeEvaluation.POSITIVE], limit=50,
        )

        groups: dict[str, list[MemoryEntry]] = {}
        for entry in positives:
            groups.setdefault(entry.decision_type, []).append(entry)

        extracted = 0
        for decision_type, group in groups.items():
            if len(group) < self.settings.pattern_min_group:
                continue
            newest = max(group, key=lambda m: m.created_at)
            if newest.applies_to_future:
                continue

            rules = await self._compress(department, decision_type, group)
            if rules:
                await self.store.attach_memory_rules(newest.id, rules)
                extracted += len(rules)
                logger.info("提取规则", department=department, decision_type=decision_type, rules=len(rules))
        return extracted

    async def _compress(self, department: str, decision_type: str, group: list[MemoryEntry]) -> list[str]:
        examples = "\n".join(
            f"- context: {m.context_summary} | lesson: {m.lesson_learned}" for m in group[:10]
        )
        messages = [
            {
                "role": "system",
                "content": (
                    "You extract generalizable decision rules from successful past decisions. "
                    "Respond ONLY with a JSON array of 1-3 short rule strings."
                ),
            },
            {
                "role": "user",
                "content": f"Department: {department}\nDecision type: {decision_type}\nSuccessful cases:\n{examples}",
            },
        ]

        try:
            response = await self.llm.complete(messages, temperature=0.2, max_tokens=512)
            items = extract_json_array(response)
        except AutopilotError as e:
            logger.warning("规则提取失败", decision_type=decision_type, error=e.message)
            return []

        return [str(r).strip() for r in items if isinstance(r, str) and r.strip()][:MAX_RULES]
