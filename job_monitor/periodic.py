"""
周期任务

每个后台循环（采集、连通性探测、对端刷新）都是一个可独立取消的任务：
- start() 立即执行第一轮，然后按间隔重复
- stop() 可重复调用、未启动时调用也安全，返回时任务已结束
- 单轮出错只记录日志，循环继续
"""

import asyncio
import logging
from contextlib import suppress
from typing import Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """可取消的周期任务基类"""

    name = "periodic"

    def __init__(self, interval: float):
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    async def tick(self):
        """执行一轮（子类必须实现）"""
        raise NotImplementedError

    async def close(self):
        """stop() 结束任务后释放资源"""

    def start(self):
        """启动后台循环（必须在事件循环中调用）"""
        if self._task is not None:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=self.name)

    async def stop(self):
        """停止后台循环"""
        if self._stop_event is not None:
            self._stop_event.set()
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        await self.close()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self):
        logger.info(f"Starting {self.name} loop (interval={self.interval}s)")
        try:
            while not self._stop_event.is_set():
                try:
                    await self.tick()
                except Exception as e:
                    logger.error(f"{self.name} error: {e}", exc_info=True)
                with suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
        except asyncio.CancelledError:
            logger.info(f"{self.name} task cancelled")
            raise
