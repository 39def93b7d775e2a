"""
Order Service — 並行実行の制御

注文作成はグローバルロックで直列化しない。同時実行数は
固定容量のプール / キューだけで制御する (バックプレッシャー)。

  Bulkhead     : 固定数のスロット。取得待ちは必ずタイムアウト付き。
                 アドミッションゲートと DB ワーカープールで使う。
  TaskPool     : N 個のワーカータスク + 有界キュー。満杯なら投入を拒否する
                 (呼び出し側が破棄してログを出す)。イベント発行で使う。
  SingleFlight : 同じキーの処理が実行中なら、その結果を共有する
                 (リクエスト合体 / thundering herd 対策)。
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable
from contextlib import asynccontextmanager
from typing import AsyncIterator, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Job = Callable[[], Awaitable[None]]


class SlotUnavailable(Exception):
    def __init__(self, name: str, timeout: float) -> None:
        super().__init__(f"No free slot in {name} within {timeout:.3f}s")
        self.name = name
        self.timeout = timeout


class Bulkhead:
    def __init__(self, name: str, capacity: int, acquire_timeout: float = 0.0) -> None:
        if capacity < 1:
            raise ValueError(f"{name}: capacity must be >= 1")
        self.name = name
        self.capacity = capacity
        self.acquire_timeout = acquire_timeout
        self._sem = asyncio.Semaphore(capacity)
        self._in_use = 0

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def usage(self) -> float:
        return self._in_use / self.capacity * 100

    async def acquire(self, timeout: float | None = None) -> None:
        """
        スロットを1つ確保する。timeout 内に空かなければ SlotUnavailable。
        timeout <= 0 なら待たずに即時判定する。
        """
        timeout = self.acquire_timeout if timeout is None else timeout
        if not self._sem.locked():
            await self._sem.acquire()
        elif timeout <= 0:
            raise SlotUnavailable(self.name, timeout)
        else:
            try:
                await asyncio.wait_for(self._sem.acquire(), timeout)
            except asyncio.TimeoutError:
                raise SlotUnavailable(self.name, timeout) from None
        self._in_use += 1

    def release(self) -> None:
        self._in_use -= 1
        self._sem.release()

    @asynccontextmanager
    async def slot(self, timeout: float | None = None) -> AsyncIterator[None]:
        await self.acquire(timeout)
        try:
            yield
        finally:
            self.release()


class TaskPool:
    def __init__(self, name: str, workers: int, queue_size: int) -> None:
        if workers < 1 or queue_size < 1:
            raise ValueError(f"{name}: workers and queue_size must be >= 1")
        self.name = name
        self.workers = workers
        self.queue_size = queue_size
        self._queue: asyncio.Queue[Job] = asyncio.Queue(maxsize=queue_size)
        self._tasks: list[asyncio.Task] = []
        self._active = 0

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def usage(self) -> float:
        busy = self._active + self._queue.qsize()
        return busy / (self.workers + self.queue_size) * 100

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._worker(), name=f"{self.name}-{i}")
            for i in range(self.workers)
        ]
        logger.info(
            "Started pool %s: workers=%d queue=%d",
            self.name,
            self.workers,
            self.queue_size,
        )

    def submit(self, job: Job) -> bool:
        """ブロックせずに投入する。キューが満杯なら False。"""
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            return False
        return True

    async def join(self) -> None:
        await self._queue.join()

    async def aclose(self, drain_timeout: float = 5.0) -> None:
        if not self._tasks:
            return
        try:
            await asyncio.wait_for(self.join(), drain_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Pool %s: %d jobs still queued at shutdown",
                self.name,
                self._queue.qsize(),
            )
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def _worker(self) -> None:
        while True:
            job = await self._queue.get()
            self._active += 1
            try:
                await job()
            except Exception:
                logger.exception("Job in pool %s failed", self.name)
            finally:
                self._active -= 1
                self._queue.task_done()


class SingleFlight:
    def __init__(self) -> None:
        self._calls: dict[Hashable, asyncio.Task] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._calls

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        """
        key の処理が実行中ならその完了を待って結果(または例外)を共有する。
        共有タスクは shield しているので、待っている1人がキャンセルされても
        他の呼び出し側の処理は止まらない。
        """
        task = self._calls.get(key)
        if task is None:
            task = asyncio.ensure_future(fn())
            self._calls[key] = task
            task.add_done_callback(lambda t: self._forget(key, t))
        return await asyncio.shield(task)

    def _forget(self, key: Hashable, task: asyncio.Task) -> None:
        if self._calls.get(key) is task:
            del self._calls[key]
        # 全員がキャンセルして誰も結果を受け取らなかった場合の警告を抑止
        if not task.cancelled():
            task.exception()
