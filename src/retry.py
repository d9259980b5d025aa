from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")

OnRetry = Callable[[int, BaseException], Any]


def backoff_delay(base_delay: float, attempt: int, backoff: str = "fixed") -> float:
    """attempt は失敗した試行番号（1始まり）。linear は base_delay × attempt。"""
    if backoff == "linear":
        return base_delay * attempt
    return base_delay


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    base_delay: float = 0.0,
    on_retry: Optional[OnRetry] = None,
    backoff: str = "fixed",
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    name: str = "",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    fn を最大 max_attempts 回まで実行する。
    - retry_on 以外の例外は即座に送出（リトライしない）
    - 試行の合間に on_retry(次の試行番号, 直前の例外) を呼ぶ（coroutine 可）。
      on_retry の例外はリトライ対象外なので、失敗し得る復旧処理は fn 側に置く
    - 使い切ったら最後の例外をそのまま送出
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    label = name or getattr(fn, "__name__", "operation")
    attempt = 1
    while True:
        try:
            return await fn()
        except retry_on as e:
            if attempt >= max_attempts:
                log.error("%s failed after %d attempts: %s", label, attempt, e)
                raise
            log.warning("%s failed (attempt %d/%d): %s", label, attempt, max_attempts, e)
            delay = backoff_delay(base_delay, attempt, backoff)
            if delay > 0:
                await sleep(delay)
            attempt += 1
            if on_retry is not None:
                res = on_retry(attempt, e)
                if inspect.isawaitable(res):
                    await res
