#!/usr/bin/env python3
"""
Enterprise Autopilot - 数据库初始化脚本

功能：
1. 创建引擎读写的表（决策、记忆、能力、审批、日志、情报缓存、用量）
2. 创建平台侧的只读表（公司、部门配置、执行器），便于本地开发
3. 可选: 从 YAML 导入执行器注册表

用法:
    python scripts/init_database.py
    python scripts/init_database.py --executors configs/executors.yaml
"""

import argparse
import asyncio
import json
import os
import sys

import yaml

# 添加项目根目录到 path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv()


PLATFORM_TABLES = """
CREATE TABLE IF NOT EXISTS companies (
    id UUID PRIMARY KEY,
    name TEXT NOT NULL,
    industry_sector TEXT,
    country TEXT,
    maturity_level TEXT DEFAULT 'starter',
    brand_voice JSONB,
    created_at TIMESTAMP DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS department_execution_configs (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    company_id UUID NOT NULL REFERENCES companies(id),
    department TEXT NOT NULL,
    autopilot_enabled BOOLEAN DEFAULT FALSE,
    execution_frequency TEXT DEFAULT '6h',
    max_credits_per_cycle INTEGER DEFAULT 10,
    max_credits_per_day INTEGER,
    monthly_credit_budget INTEGER,
    max_posts_per_day INTEGER DEFAULT 5,
    max_actions_per_type INTEGER DEFAULT 10,
    rate_limits JSONB DEFAULT '{}',
    active_hours JSONB DEFAULT '{"start": "09:00", "end": "21:00"}',
    guardrails JSONB DEFAULT '{}',
    allowed_actions JSONB DEFAULT '[]',
    require_human_approval BOOLEAN DEFAULT FALSE,
    last_execution_at TIMESTAMP,
    total_cycles_run INTEGER DEFAULT 0,
    UNIQUE (company_id, department)
);

CREATE TABLE IF NOT EXISTS platform_agents (
    internal_code TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    department TEXT,
    edge_function_name TEXT,
    credits_per_use INTEGER DEFAULT 1,
    is_active BOOLEAN DEFAULT TRUE,
    is_implemented BOOLEAN DEFAULT TRUE,
    required_context JSONB DEFAULT '[]',
    import_platform TEXT
);
"""

ENGINE_TABLES = """
CREATE TABLE IF NOT EXISTS autopilot_decisions (
    id UUID PRIMARY KEY,
    company_id UUID NOT NULL,
    department TEXT NOT NULL,
    cycle_id UUID NOT NULL,
    decision_type TEXT NOT NULL,
    priority TEXT,
    risk_level TEXT,
    description TEXT,
    reasoning TEXT,
    agent_to_execute TEXT,
    action_parameters JSONB DEFAULT '{}',
    expected_impact JSONB DEFAULT '{}',
    external_signal_influence BOOLEAN DEFAULT FALSE,
    priority_score NUMERIC(5, 2),
    score_breakdown JSONB DEFAULT '{}',
    guardrail_result TEXT,
    guardrail_details TEXT,
    warnings JSONB DEFAULT '[]',
    action_taken BOOLEAN DEFAULT FALSE,
    execution_result TEXT,
    execution_error TEXT,
    credits_consumed INTEGER DEFAULT 0,
    executed_at TIMESTAMP,
    created_at TIMESTAMP DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_decisions_company_dept ON autopilot_decisions (company_id, department, created_at DESC);

CREATE TABLE IF NOT EXISTS agent_usage_log (
    id BIGSERIAL PRIMARY KEY,
    company_id UUID NOT NULL,
    department TEXT,
    agent_code TEXT,
    status TEXT,
    credits_consumed INTEGER DEFAULT 0,
    execution_time_ms INTEGER DEFAULT 0,
    input_summary TEXT,
    output_summary TEXT,
    error_message TEXT,
    created_at TIMESTAMP DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_usage_company_time ON agent_usage_log (company_id, created_at);

CREATE TABLE IF NOT EXISTS autopilot_memory (
    id UUID PRIMARY KEY,
    company_id UUID NOT NULL,
    department TEXT NOT NULL,
    cycle_id UUID,
    decision_id UUID,
    decision_type TEXT NOT NULL,
    capability_code TEXT,
    context_summary TEXT,
    context_hash TEXT,
    external_signal_used BOOLEAN DEFAULT FALSE,
    outcome_evaluation TEXT DEFAULT 'pending',
    outcome_score NUMERIC(4, 3),
    lesson_learned TEXT,
    applies_to_future JSONB DEFAULT '[]',
    created_at TIMESTAMP DEFAULT NOW(),
    evaluated_at TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_memory_pending ON autopilot_memory (company_id, department, outcome_evaluation);

CREATE TABLE IF NOT EXISTS external_intelligence_cache (
    id BIGSERIAL PRIMARY KEY,
    company_id UUID NOT NULL,
    intelligence_type TEXT,
    source TEXT,
    query_used TEXT,
    data JSONB DEFAULT '{}',
    relevance_score NUMERIC(3, 2),
    sentiment TEXT,
    impact_level TEXT,
    fetched_at TIMESTAMP DEFAULT NOW(),
    expires_at TIMESTAMP
);

CREATE TABLE IF NOT EXISTS department_capabilities (
    id UUID PRIMARY KEY,
    company_id UUID NOT NULL,
    department TEXT NOT NULL,
    capability_code TEXT NOT NULL,
    capability_name TEXT,
    description TEXT,
    trigger_condition JSONB DEFAULT '{}',
    decision_types JSONB DEFAULT '[]',
    status TEXT NOT NULL,
    source TEXT DEFAULT 'ai_generated',
    auto_activate BOOLEAN DEFAULT FALSE,
    risk_level TEXT DEFAULT 'medium',
    required_data JSONB DEFAULT '[]',
    success_metrics JSONB DEFAULT '[]',
    proposed_reason TEXT,
    gap_evidence JSONB DEFAULT '{}',
    trial_started_at TIMESTAMP,
    trial_expires_at TIMESTAMP,
    activated_at TIMESTAMP,
    activation_reason TEXT,
    deactivated_at TIMESTAMP,
    deactivation_reason TEXT,
    last_evaluated_at TIMESTAMP,
    execution_count INTEGER DEFAULT 0,
    created_at TIMESTAMP DEFAULT NOW(),
    updated_at TIMESTAMP DEFAULT NOW(),
    UNIQUE (company_id, capability_code)
);

CREATE TABLE IF NOT EXISTS autopilot_approvals (
    id UUID PRIMARY KEY,
    company_id UUID NOT NULL,
    record_type TEXT NOT NULL,
    reference_id TEXT NOT NULL,
    content_type TEXT,
    content_data JSONB DEFAULT '{}',
    status TEXT NOT NULL,
    required_approvers JSONB DEFAULT '[]',
    requires_sign_off BOOLEAN DEFAULT FALSE,
    flagged_for_review BOOLEAN DEFAULT FALSE,
    submitted_by TEXT,
    notes TEXT,
    created_at TIMESTAMP DEFAULT NOW(),
    decided_at TIMESTAMP
);

CREATE TABLE IF NOT EXISTS department_execution_log (
    id UUID PRIMARY KEY,
    company_id UUID NOT NULL,
    department TEXT NOT NULL,
    cycle_id UUID NOT NULL,
    phase TEXT NOT NULL,
    status TEXT NOT NULL,
    context_snapshot JSONB,
    decisions_made JSONB DEFAULT '[]',
    actions_taken JSONB DEFAULT '[]',
    content_approved INTEGER DEFAULT 0,
    content_rejected INTEGER DEFAULT 0,
    content_pending_review INTEGER DEFAULT 0,
    credits_consumed INTEGER DEFAULT 0,
    execution_time_ms INTEGER DEFAULT 0,
    error_message TEXT,
    created_at TIMESTAMP DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS autopilot_audit_log (
    id UUID PRIMARY KEY,
    company_id UUID NOT NULL,
    department TEXT,
    cycle_id UUID,
    event_type TEXT NOT NULL,
    target_type TEXT,
    target_id TEXT,
    details JSONB DEFAULT '{}',
    created_at TIMESTAMP DEFAULT NOW()
);
"""


async def get_connection():
    """获取数据库连接"""
    import asyncpg
    db_url = os.getenv('DATABASE_URL', '').replace('postgresql+asyncpg://', 'postgresql://')
    return await asyncpg.connect(db_url, timeout=10)


async def create_tables(conn):
    """创建表"""
    print("\n📦 创建平台表...")
    await conn.execute(PLATFORM_TABLES)
    print("📦 创建引擎表...")
    await conn.execute(ENGINE_TABLES)
    print("   ✅ 完成")


async def import_executors(conn, path: str):
    """从 YAML 导入执行器注册表"""
    print(f"\n📥 导入执行器: {path}")

    with open(path, 'r') as f:
        data = yaml.safe_load(f) or {}

    count = 0
    for code, executor in (data.get('executors') or {}).items():
        await conn.execute("""
            INSERT INTO platform_agents (
                internal_code, name, department, edge_function_name, credits_per_use,
                is_active, is_implemented, required_context, import_platform
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9)
            ON CONFLICT (internal_code) DO UPDATE SET
                name = EXCLUDED.name,
                department = EXCLUDED.department,
                edge_function_name = EXCLUDED.edge_function_name,
                credits_per_use = EXCLUDED.credits_per_use,
                is_implemented = EXCLUDED.is_implemented,
                required_context = EXCLUDED.required_context,
                import_platform = EXCLUDED.import_platform
        """,
            code,
            executor.get('name', code),
            executor.get('department'),
            executor.get('endpoint', code),
            executor.get('credits_per_use', 1),
            executor.get('is_active', True),
            executor.get('is_implemented', True),
            json.dumps(executor.get('required_context', [])),
            executor.get('import_platform'),
        )
        count += 1

    print(f"   ✅ 导入 {count} 个执行器")


async def main():
    parser = argparse.ArgumentParser(description="Enterprise Autopilot 数据库初始化")
    parser.add_argument("--executors", help="执行器注册表 YAML 路径")
    args = parser.parse_args()

    print("=" * 50)
    print("Enterprise Autopilot - 数据库初始化")
    print("=" * 50)

    conn = await get_connection()
    try:
        await create_tables(conn)
        if args.executors:
            await import_executors(conn, args.executors)
    finally:
        await conn.close()

    print("\n🎉 初始化完成")


if __name__ == "__main__":
    asyncio.run(main())
