# services/calls.py
import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

LOG = logging.getLogger("cardmatch.calls")

T = TypeVar("T")


async def guarded(call: Awaitable[T], default: T, label: str, timeout_s: Optional[float] = None) -> T:
    """
    Await an external call with a timeout. A timeout or collaborator error is
    logged and replaced by `default`, the call's empty result. Cancellation
    of the surrounding request still propagates.
    """
    try:
        if timeout_s:
            return await asyncio.wait_for(call, timeout=timeout_s)
        return await call
    except asyncio.TimeoutError:
        LOG.warning("%s timed out after %.1fs", label, timeout_s or 0.0)
        return default
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        LOG.warning("%s failed: %s", label, exc)
        return default
