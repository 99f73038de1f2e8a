# Enterprise Autopilot - 外部客户端
"""
外部服务客户端

包含:
- llm: LLM 调用（决策生成、情报检索、规则提取、能力提案）
- executor: 执行器 HTTP 调用
"""
