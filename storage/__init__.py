# Enterprise Autopilot - 数据访问
"""
数据访问层

包含:
- base: DataStore 抽象端口
- postgres: asyncpg 实现
- memory: 进程内实现（测试与本地演示）
"""
