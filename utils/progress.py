import asyncio
from contextlib import asynccontextmanager
from typing import Callable


@asynccontextmanager
async def progress_heartbeat(advance: Callable[[], None], interval_seconds: float):
    """Call `advance` every interval while the block runs.

    The ticker task is cancelled on every exit path, so no tick fires after
    the block settles.
    """

    async def _tick():
        while True:
            await asyncio.sleep(interval_seconds)
            advance()

    ticker = asyncio.create_task(_tick())
    try:
        yield ticker
    finally:
        ticker.cancel()
