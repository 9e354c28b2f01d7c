from __future__ import annotations

import asyncio
import random


def retry_delay(attempt: int, *, base_s: float, max_s: float) -> float:
    # Cap the exponent so long outages cannot overflow the float conversion.
    exponential = min(max_s, base_s * (2 ** min(attempt, 32)))
    return exponential * random.uniform(0.8, 1.2)


async def wait_or_stop(stop_event: asyncio.Event, timeout_s: float) -> bool:
    """Sleep up to ``timeout_s``; return True as soon as ``stop_event`` is set."""

    if stop_event.is_set():
        return True
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout_s)
    except asyncio.TimeoutError:
        return False
    return True
