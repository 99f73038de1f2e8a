# Enterprise Autopilot - HTTP API
"""
FastAPI 触发入口

核心端点:
- POST /api/autopilot/run: 触发自动驾驶周期
- GET /health: 健康检查
"""
