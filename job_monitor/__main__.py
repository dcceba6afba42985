"""
Job Monitor 主入口

运行方式: python -m job_monitor
"""

from .main import cli

if __name__ == "__main__":
    cli()
