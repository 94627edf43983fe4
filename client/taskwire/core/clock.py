"""时钟抽象

重连调度只通过 Clock 读取时间和等待，测试时可替换为手动推进的时钟。
"""

import asyncio
import time
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float:
        """单调时间（秒）"""
        ...

    def epoch_ms(self) -> int:
        """帧时间戳使用的墙钟毫秒数"""
        ...

    async def sleep(self, delay: float) -> None: ...


class SystemClock:
    def now(self) -> float:
        return time.monotonic()

    def epoch_ms(self) -> int:
        return int(time.time() * 1000)

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(delay)
