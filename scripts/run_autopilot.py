#!/usr/bin/env python3
# Enterprise Autopilot - 手动触发
"""
命令行触发自动驾驶周期

用法:
    python scripts/run_autopilot.py                          # 所有到期部门
    python scripts/run_autopilot.py --company <id>           # 指定公司（绕过频率门控）
    python scripts/run_autopilot.py --company <id> --department sales
    python scripts/run_autopilot.py --mock                   # 内存数据 + Mock LLM（演示）
"""

import argparse
import asyncio
import json
import os
import sys
from datetime import datetime, timedelta

# 添加项目根目录
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv()

import structlog
import yaml

from agents.executor import MockExecutorClient
from agents.llm import MockLLMClient
from engine.cycle import AutopilotEngine, create_engine
from engine.logging_config import setup_logging
from engine.models import DepartmentConfig, ExecutorDefinition
from engine.settings import load_settings
from storage.memory import InMemoryDataStore

logger = structlog.get_logger()


DEMO_COMPANY = "00000000-0000-0000-0000-000000000001"
EXECUTOR_REGISTRY = "configs/executors.yaml"

DEMO_DECISIONS = {
    "marketing": [
        {
            "decision_type": "create_content",
            "priority": "high",
            "risk_level": "low",
            "description": "Create a carousel post highlighting customer success stories",
            "reasoning": "Instagram engagement is improving week over week and carousel posts outperform single images",
            "agent_to_execute": "MKT-CONTENT",
            "expected_impact": {"metric": "engagement_rate", "estimated_change": "+12%"},
        },
        {
            "decision_type": "publish",
            "priority": "medium",
            "risk_level": "medium",
            "description": "Publish the carousel on LinkedIn during business hours",
            "agent_to_execute": "MKT-PUBLISHER",
            "action_parameters": {"depends_on": "create_content"},
        },
    ],
    "sales": [
        {
            "decision_type": "alert_stalled",
            "priority": "high",
            "description": "Alert owners of deals without updates for more than a week",
            "reasoning": "Two deals in negotiation have stalled",
        },
    ],
}


def demo_oracle(messages: list[dict]) -> str:
    """按提示词中的部门返回示例决策"""
    system = messages[0]["content"] if messages else ""
    for department, decisions in DEMO_DECISIONS.items():
        if f"for the {department.upper()} department" in system:
            return json.dumps(decisions)
    return "[]"


def load_executors(path: str) -> list[ExecutorDefinition]:
    if not os.path.exists(path):
        return []
    with open(path, 'r') as f:
        data = yaml.safe_load(f) or {}
    return [
        ExecutorDefinition.from_dict({"code": code, **executor})
        for code, executor in (data.get('executors') or {}).items()
    ]


def build_demo_store() -> InMemoryDataStore:
    """演示数据: 一家已连接 Instagram 的公司，营销与销售部门启用"""
    now = datetime.utcnow()
    store = InMemoryDataStore()
    store.set_company_profile(DEMO_COMPANY, {
        "name": "Demo Corp",
        "industry_sector": "",
        "maturity_level": "growing",
        "brand_voice": {"tone": "friendly", "language": "en"},
    })
    for department in ("marketing", "sales"):
        store.add_department_config(DepartmentConfig(
            company_id=DEMO_COMPANY,
            department=department,
            active_hours={"start": "00:00", "end": "23:00"},
            max_credits_per_cycle=50,
        ))
    for executor in load_executors(EXECUTOR_REGISTRY):
        store.add_executor(executor)

    store.add_records("social_connections", [
        {"company_id": DEMO_COMPANY, "platform": "instagram", "is_active": True, "created_at": now},
    ])
    store.add_records("instagram_posts", [
        {
            "company_id": DEMO_COMPANY,
            "like_count": 40 + i * 5,
            "comment_count": 3 + i,
            "created_at": now - timedelta(days=i * 3),
        }
        for i in range(8)
    ])
    store.add_records("crm_deals", [
        {
            "company_id": DEMO_COMPANY,
            "stage": "negotiation",
            "value": 12000,
            "created_at": now - timedelta(days=20),
            "updated_at": now - timedelta(days=10),
        },
        {
            "company_id": DEMO_COMPANY,
            "stage": "proposal",
            "value": 8000,
            "created_at": now - timedelta(days=5),
            "updated_at": now - timedelta(days=1),
        },
    ])
    return store


def build_engine(mock: bool) -> AutopilotEngine:
    settings = load_settings()
    if not mock:
        return create_engine(settings)
    return AutopilotEngine(
        store=build_demo_store(),
        llm=MockLLMClient(default=demo_oracle),
        executor_client=MockExecutorClient(),
        settings=settings,
    )


async def main():
    parser = argparse.ArgumentParser(description="Enterprise Autopilot 手动触发")
    parser.add_argument("--company", help="公司 ID（绕过频率门控）")
    parser.add_argument("--department", help="只运行该部门")
    parser.add_argument("--mock", action="store_true", help="使用内存数据与 Mock LLM")
    parser.add_argument("--json-logs", action="store_true", help="JSON 日志输出")
    args = parser.parse_args()

    setup_logging(os.getenv("LOG_LEVEL", "INFO"), json_logs=args.json_logs)

    engine = build_engine(args.mock)
    company = args.company or (DEMO_COMPANY if args.mock else None)
    try:
        result = await engine.run(company_id=company, department=args.department)
    finally:
        await engine.close()

    print(json.dumps(result, ensure_ascii=False, indent=2, default=str))


if __name__ == "__main__":
    asyncio.run(main())
