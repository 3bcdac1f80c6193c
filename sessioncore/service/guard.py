from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from sessioncore.logging import get_logger
from sessioncore.service.errors import StoreUnavailableError
from sessioncore.storage.errors import StoreUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


async def guarded(awaitable: Awaitable[T], *, op: str, timeout: float) -> T:
    """Await a store call under a deadline, mapping backend failures.

    Timeouts and backend outages both surface as ``StoreUnavailableError`` so
    callers can retry instead of reporting an authentication failure.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as exc:
        logger.warning("store_call_timed_out", op=op, timeout=timeout)
        raise StoreUnavailableError(f"{op} timed out", detail={"op": op}) from exc
    except StoreUnavailable as exc:
        logger.warning("store_unavailable", op=op, backend=exc.backend, error=exc.message)
        raise StoreUnavailableError(f"{op} failed", detail={"op": op}) from exc
