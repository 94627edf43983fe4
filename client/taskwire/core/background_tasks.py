"""后台任务模块

管理客户端生命周期内的后台任务，例如读取循环、计划中的重连。
"""

import asyncio
from typing import Coroutine

from taskwire.core.log_utils import Logger


class BackgroundTasks:
    """
    保存后台任务的引用，以便在关闭时能够安全地取消。
    每个 Transport 持有一个实例，而不是全局集合。
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def create(self, coro: Coroutine, name: str | None = None) -> asyncio.Task:
        """
        创建一个新的后台任务，并将其加入管理集合。
        """
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        # 当任务完成时，自动从集合中移除，避免内存泄漏
        task.add_done_callback(self._tasks.discard)
        Logger.debug(f"后台任务已创建: {name or coro.__qualname__}")
        return task

    def __len__(self) -> int:
        return len(self._tasks)

    async def stop_all(self, exclude: asyncio.Task | None = None):
        """
        停止所有正在运行的后台任务。
        """
        for task in list(self._tasks):
            if task is exclude or task.done():
                continue
            task.cancel()
            try:
                # 等待任务响应取消操作
                await task
            except asyncio.CancelledError:
                Logger.debug(f"后台任务已取消: {task.get_name()}")
            except Exception as e:
                Logger.error("后台任务关闭时发生错误", exc=e)
