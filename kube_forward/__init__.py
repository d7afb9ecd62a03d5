"""
kube-forward - Kubernetes 调试辅助工具

负责：
- 一次启动多条 kubectl port-forward，统一停止
- 读取并解码 Kubernetes Secret 字段
- 用临时 Pod 验证 MongoDB 认证
- 可选的 port-forward 状态查询 API
"""

__version__ = "1.0.0"
