"""
Job Monitor

定期探测 systemd 服务与 HTTP 地址，记录可用率历史，
并聚合多个节点的状态供仪表盘使用。
"""

__version__ = "1.0.0"
