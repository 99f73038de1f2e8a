# Enterprise Autopilot - 部门配置读取
"""
部门配置适配器

- 读取启用自动驾驶的部门配置（引擎只读）
- 频率门控: 距 last_execution_at 超过 execution_frequency 才到期
- 指定 company_id 的手动触发绕过频率门控
"""

from datetime import datetime, timedelta
from typing import Optional

import structlog

from engine.models import DepartmentConfig
from engine.settings import AutopilotSettings
from storage.base import DataStore

logger = structlog.get_logger()


class ConfigStore:
    """部门配置适配器"""

    def __init__(self, store: DataStore, settings: AutopilotSettings):
        self.store = store
        self.settings = settings

    def is_due(self, config: DepartmentConfig, now: Optional[datetime] = None) -> bool:
        """频率窗口是否已过

        未知频率按默认 6h 处理；从未执行过的配置总是到期。
        """
        if config.last_execution_at is None:
            return True
        now = now or datetime.utcnow()
        window = timedelta(hours=self.settings.frequency_for(config.execution_frequency))
        return now - config.last_execution_at >= window

    async def eligible_configs(
        self,
        company_id: Optional[str] = None,
        department: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> list[DepartmentConfig]:
        """本次触发需要运行的部门配置

        Args:
            company_id: 指定公司（手动触发，不做频率门控）
            department: 指定部门
            now: 当前时间（测试注入）
        """
        configs = await self.store.list_department_configs(company_id, department)

        if company_id:
            logger.info("手动触发，跳过频率门控", company_id=company_id, count=len(configs))
            return configs

        due = [c for c in configs if self.is_due(c, now)]
        logger.info("频率门控", total=len(configs), due=len(due))
        return due

    async def get_config(self, company_id: str, department: str) -> Optional[DepartmentConfig]:
        configs = await self.store.list_department_configs(company_id, department)
        return configs[0] if configs else None

    async def mark_executed(self, config: DepartmentConfig, executed_at: Optional[datetime] = None) -> None:
        """更新最近执行时间与周期计数"""
        await self.store.mark_department_executed(
            config.company_id,
            config.department,
            executed_at or datetime.utcnow(),
        )
