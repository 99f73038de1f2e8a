# Enterprise Autopilot - 引擎模块
"""
自动驾驶引擎核心

包含:
- cycle: 周期调度与触发入口
- preflight / sense / think / guard / act / learn: 周期各阶段
- intelligence / memory: 外部情报与记忆
- scoring: 优先级评分
- genesis / lifecycle: 能力演化与生命周期
- audit: 阶段日志与审计事件
"""
