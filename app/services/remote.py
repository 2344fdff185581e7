# app/services/remote.py
import asyncio
import functools
import logging
from typing import Callable, TypeVar

from app.core.errors import DriveError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_remote(
    fn: Callable[..., T],
    *args,
    timeout: float,
    unavailable: type[DriveError],
    undo: Callable[[T], object] | None = None,
    **kwargs,
) -> T:
    """Run a blocking collaborator call in a worker thread, bounded by ``timeout``.

    A call that times out is reported as ``unavailable``; errors raised by
    the collaborator itself propagate unchanged.

    A worker thread cannot be stopped, so a timed-out call may still take
    effect later. Calls with side effects pass ``undo``: after a timeout or
    a cancellation the thread is waited for, and if it completed anyway its
    result is handed to ``undo`` before the error propagates.
    """
    call = functools.partial(fn, *args, **kwargs)
    if undo is None:
        try:
            return await asyncio.wait_for(asyncio.to_thread(call), timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("%s timed out after %gs", getattr(fn, "__qualname__", fn), timeout)
            raise unavailable(f"Backend call timed out after {timeout:g}s") from exc

    work = asyncio.ensure_future(asyncio.to_thread(call))
    try:
        return await asyncio.wait_for(asyncio.shield(work), timeout)
    except asyncio.TimeoutError as exc:
        logger.warning("%s timed out after %gs, waiting for it to settle", getattr(fn, "__qualname__", fn), timeout)
        await asyncio.shield(_undo_late(work, undo, fn))
        raise unavailable(f"Backend call timed out after {timeout:g}s") from exc
    except asyncio.CancelledError:
        await asyncio.shield(_undo_late(work, undo, fn))
        raise


async def _undo_late(work: asyncio.Future, undo: Callable, fn: Callable) -> None:
    try:
        result = await work
    except Exception as exc:
        # the call failed by itself, so nothing landed
        logger.debug("Abandoned %s failed: %r", getattr(fn, "__qualname__", fn), exc)
        return
    logger.warning("Abandoned %s completed late, undoing it", getattr(fn, "__qualname__", fn))
    try:
        await asyncio.to_thread(undo, result)
    except DriveError:
        logger.exception("Could not undo late %s", getattr(fn, "__qualname__", fn))
