from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional, Tuple, TypeVar

logger = logging.getLogger("socksgate.relay")

__all__ = ["pipe_bidirectional", "close_writer"]

T = TypeVar("T")


async def close_writer(w: Optional[asyncio.StreamWriter], timeout: float = 1.0) -> None:
    if w is None:
        return
    try:
        if not w.is_closing():
            w.close()
    except Exception:
        pass
    try:
        await asyncio.wait_for(w.wait_closed(), timeout=timeout)
    except Exception:
        pass


class _Activity:
    """Last time a byte moved in either direction of one relay."""

    def __init__(self, idle_timeout: float) -> None:
        self.idle_timeout = idle_timeout
        self.last = time.monotonic()

    def touch(self) -> None:
        self.last = time.monotonic()

    def left(self) -> float:
        return self.idle_timeout - (time.monotonic() - self.last)


async def _step(make: Callable[[], Awaitable[T]], activity: _Activity) -> T:
    if activity.idle_timeout <= 0:
        return await make()
    while True:
        left = activity.left()
        if left <= 0:
            raise asyncio.TimeoutError()
        try:
            return await asyncio.wait_for(make(), timeout=left)
        except asyncio.TimeoutError:
            # Quiet here, but the other direction may have moved meanwhile
            continue


async def _pump(
    name: str,
    src: asyncio.StreamReader,
    dst: asyncio.StreamWriter,
    bufsize: int,
    activity: _Activity,
) -> Tuple[str, int, str]:
    moved = 0
    try:
        while True:
            data = await _step(lambda: src.read(bufsize), activity)
            if not data:
                return name, moved, "eof"
            activity.touch()
            moved += len(data)
            dst.write(data)
            await _step(dst.drain, activity)
    except asyncio.TimeoutError:
        return name, moved, "timeout"
    except asyncio.CancelledError:
        return name, moved, "cancelled"
    except Exception:
        return name, moved, "error"


async def pipe_bidirectional(
    a_r: asyncio.StreamReader,
    a_w: asyncio.StreamWriter,
    b_r: asyncio.StreamReader,
    b_w: asyncio.StreamWriter,
    bufsize: int = 65536,
    idle_timeout: float = 0.0,
    cid: Optional[str] = None,
    label: str = "",
) -> Tuple[int, int, str, str]:
    """
    Relay bytes a->b and b->a until either side hits EOF or errors, or until
    nothing has moved in either direction for ``idle_timeout`` seconds (0:
    never). Then cancel the other direction and close both writers.

    Returns (bytes_a2b, bytes_b2a, end_reason_a, end_reason_b).
    """
    activity = _Activity(idle_timeout)
    tasks = [
        asyncio.create_task(_pump("a->b", a_r, b_w, bufsize, activity)),
        asyncio.create_task(_pump("b->a", b_r, a_w, bufsize, activity)),
    ]
    ends: Dict[str, Tuple[int, str]] = {"a->b": (0, "-"), "b->a": (0, "-")}
    try:
        _, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for t in pending:
            t.cancel()
        for res in await asyncio.gather(*tasks, return_exceptions=True):
            if isinstance(res, tuple):
                ends[res[0]] = (res[1], res[2])
    except asyncio.CancelledError:
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
    finally:
        # No half-close: both legs go down together
        await asyncio.gather(close_writer(a_w), close_writer(b_w))
        logger.debug(
            "relay[%s]: summary label=%s a2b=%d b2a=%d end=%s|%s",
            cid or "-", label or "-", ends["a->b"][0], ends["b->a"][0], ends["a->b"][1], ends["b->a"][1],
        )
    (a2b, end_a), (b2a, end_b) = ends["a->b"], ends["b->a"]
    return a2b, b2a, end_a, end_b
