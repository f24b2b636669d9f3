import asyncio
from typing import Callable


async def until(predicate: Callable[[], bool], ticks: int = 200) -> None:
    """Let the event loop run until `predicate` holds."""
    for _ in range(ticks):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")
