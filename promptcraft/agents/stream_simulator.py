"""模拟逐字输出。

回答在生成完成后才拿到全文，这里按固定节奏逐字揭示前缀，
让展示层看起来像流式输出。换行字符不等待，避免段落之间停顿。
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator, Optional

from promptcraft.config.settings import settings


@dataclass
class RevealStep:
    prefix: str
    delay: float  # 展示本前缀之前等待的秒数


def reveal_steps(text: str, tick: float) -> Iterator[RevealStep]:
    """逐字产生前缀；下一个揭示的字符是换行时延迟为 0。"""

    for i in range(len(text)):
        if i == 0 or text[i] == "\n":
            delay = 0.0
        else:
            delay = tick
        yield RevealStep(prefix=text[: i + 1], delay=delay)


class MessageStreamSimulator:
    """可取消的逐字揭示任务。

    同一时间只运行一个揭示任务；cancel() 之后不会再回调 on_update。
    """

    def __init__(
        self,
        tick_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if tick_seconds is None:
            tick_seconds = settings.stream_tick_ms / 1000
        self._tick = tick_seconds
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def play(self, text: str, on_update: Callable[[str], None]) -> bool:
        """揭示完整文本，正常结束返回 True，被取消返回 False。"""

        self.cancel()
        task = asyncio.get_running_loop().create_task(self._run(text, on_update))
        self._task = task
        try:
            await asyncio.wait({task})
        finally:
            if not task.done():
                task.cancel()
            if self._task is task:
                self._task = None
        if task.cancelled():
            return False
        task.result()
        return True

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self, text: str, on_update: Callable[[str], None]) -> None:
        for step in reveal_steps(text, self._tick):
            if step.delay > 0:
                await self._sleep(step.delay)
            else:
                # 让出一次调度，保证 cancel() 能在任意一步生效
                await asyncio.sleep(0)
            on_update(step.prefix)
