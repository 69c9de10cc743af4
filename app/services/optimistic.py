from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

S = TypeVar("S")
R = TypeVar("R")


@dataclass(slots=True)
class MutationOutcome(Generic[R]):
    ok: bool
    result: R | None = None
    error: BaseException | None = None


async def run_optimistic(
    *,
    label: str,
    snapshot: Callable[[], S],
    apply: Callable[[], None],
    remote: Callable[[], Awaitable[R]],
    restore: Callable[[S], Any],
    timeout: float | None = None,
) -> MutationOutcome[R]:
    """Apply a local change ahead of its remote confirmation.

    ``restore`` receives what ``snapshot`` captured before ``apply`` ran and is
    only called when the remote call raises or times out. It may be a
    coroutine function.
    """
    saved = snapshot()
    apply()
    try:
        if timeout is not None:
            result = await asyncio.wait_for(remote(), timeout=timeout)
        else:
            result = await remote()
    except Exception as exc:
        logger.exception("Optimistic %s failed, restoring local state", label)
        restored = restore(saved)
        if inspect.isawaitable(restored):
            await restored
        return MutationOutcome(ok=False, error=exc)
    return MutationOutcome(ok=True, result=result)
