# Enterprise Autopilot - 审计日志
"""
审计记录

- 部门执行日志: 每周期每阶段一行，只追加
- 统一审计事件: 护栏干预、能力状态转移、周期失败
"""

from typing import Optional

import structlog

from engine.models import AuditEvent, ExecutionLogEntry, PhaseStatus
from storage.base import DataStore

logger = structlog.get_logger()


class AuditLogger:
    """审计记录器"""

    def __init__(self, store: DataStore):
        self.store = store

    async def log_phase(
        self,
        company_id: str,
        department: str,
        cycle_id: str,
        phase: str,
        status: PhaseStatus = PhaseStatus.COMPLETED,
        **fields,
    ) -> ExecutionLogEntry:
        """写入阶段日志

        Args:
            phase: 阶段名
            status: 阶段状态
            **fields: ExecutionLogEntry 的其余字段
        """
        entry = ExecutionLogEntry(
            company_id=company_id,
            department=department,
            cycle_id=cycle_id,
            phase=phase,
            status=status,
            **fields,
        )
        await self.store.insert_execution_log(entry)

        log = logger.warning if status in (PhaseStatus.ABORTED, PhaseStatus.FAILED) else logger.info
        log(
            "阶段完成",
            company_id=company_id,
            department=department,
            cycle_id=cycle_id,
            phase=phase,
            status=status.value,
            error=entry.error_message,
        )
        return entry

    async def record(
        self,
        company_id: str,
        event_type: str,
        details: dict,
        department: Optional[str] = None,
        cycle_id: Optional[str] = None,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
    ) -> AuditEvent:
        """写入统一审计事件"""
        event = AuditEvent(
            company_id=company_id,
            department=department,
            cycle_id=cycle_id,
            event_type=event_type,
            target_type=target_type,
            target_id=target_id,
            details=details,
        )
        await self.store.insert_audit_event(event)
        return event
