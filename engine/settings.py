# Enterprise Autopilot - 引擎配置
"""
引擎全局配置

加载顺序:
1. 代码默认值
2. configs/autopilot.yaml（可选）
3. 环境变量（DATABASE_URL, LLM_API_URL, LLM_API_KEY, EXECUTOR_BASE_URL, EXECUTOR_API_KEY）
"""

import os
from dataclasses import dataclass, field, fields
from typing import Optional

import structlog
import yaml

logger = structlog.get_logger()


DEFAULT_CONFIG_PATH = "configs/autopilot.yaml"


@dataclass
class AutopilotSettings:
    """引擎可调参数"""

    # 调度频率（小时）
    frequency_hours: dict = field(default_factory=lambda: {
        "1h": 1, "2h": 2, "6h": 6, "12h": 12, "24h": 24,
    })
    default_frequency_hours: int = 6

    # 外部情报新鲜度（按成熟度，小时；0 表示每周期都拉取）
    intelligence_freshness_hours: dict = field(default_factory=lambda: {
        "starter": 168, "growing": 72, "established": 24, "scaling": 0,
    })
    default_freshness_hours: int = 72
    intelligence_ttl_hours: int = 24

    # 感知窗口（天）
    sense_lookback_days: int = 30
    sense_recent_days: int = 7
    max_competitors: int = 10

    # 记忆与学习
    memory_limit: int = 10
    memory_cooldown_days: int = 7
    evaluation_batch_size: int = 20
    pattern_min_group: int = 3

    # 决策
    max_decisions: int = 5

    # 能力
    trial_days: int = 7
    reversal_window_days: int = 14
    unused_capability_days: int = 30
    gap_min_total: int = 2
    max_proposals: int = 3

    # 执行器
    engine_executor_name: str = "enterprise-autopilot-engine"
    max_call_depth: int = 3

    # 外部服务
    database_url: Optional[str] = None
    llm_api_url: Optional[str] = None
    llm_api_key: Optional[str] = None
    executor_base_url: Optional[str] = None
    executor_api_key: Optional[str] = None

    def frequency_for(self, frequency: str) -> int:
        return int(self.frequency_hours.get(frequency, self.default_frequency_hours))

    def freshness_for(self, maturity_level: str) -> int:
        return int(self.intelligence_freshness_hours.get(maturity_level, self.default_freshness_hours))


ENV_OVERRIDES = {
    "database_url": "DATABASE_URL",
    "llm_api_url": "LLM_API_URL",
    "llm_api_key": "LLM_API_KEY",
    "executor_base_url": "EXECUTOR_BASE_URL",
    "executor_api_key": "EXECUTOR_API_KEY",
}


def load_settings(path: Optional[str] = None) -> AutopilotSettings:
    """加载配置

    Args:
        path: YAML 配置文件路径，默认读取 AUTOPILOT_CONFIG 或 configs/autopilot.yaml

    Returns:
        配置实例
    """
    settings = AutopilotSettings()
    config_path = path or os.getenv("AUTOPILOT_CONFIG", DEFAULT_CONFIG_PATH)

    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        known = {f.name for f in fields(AutopilotSettings)}
        for key, value in data.items():
            if key not in known:
                logger.warning("未知配置项", key=key, path=config_path)
                continue
            setattr(settings, key, value)
        logger.info("加载引擎配置", path=config_path)
    else:
        logger.warning("引擎配置文件不存在，使用默认值", path=config_path)

    for attr, env_name in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            setattr(settings, attr, value)

    return settings
