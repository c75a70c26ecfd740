"""Per-contact debounce of bursty inbound fragments.

A user typing one thought across several quick messages gets one reply:
fragments for the same key accumulate until the key has been quiet for the
configured period, then the joined text is handed to a single flush callback.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Hashable, Optional

from chatrelay.logging_config import get_logger

logger = get_logger("coalescer")

FlushCallback = Callable[[str], Awaitable[Any]]
ErrorReporter = Callable[[Hashable, BaseException], Awaitable[Any]]


@dataclass(eq=False)
class CoalesceBuffer:
    pending_parts: list[str] = field(default_factory=list)
    expiry_task: Optional[asyncio.Task] = None
    on_flush: Optional[FlushCallback] = None


class MessageCoalescer:
    def __init__(
        self,
        quiet_period_seconds: float,
        *,
        on_error: Optional[ErrorReporter] = None,
        sleep_func=asyncio.sleep,
    ):
        self.quiet_period_seconds = quiet_period_seconds
        self._on_error = on_error
        self._sleep = sleep_func
        self._buffers: dict[Hashable, CoalesceBuffer] = {}
        self._flushing: set[asyncio.Task] = set()

    def push(self, contact_key: Hashable, body_fragment: str, on_flush: FlushCallback) -> CoalesceBuffer:
        """Add a fragment and (re)start the quiet-period timer for its key.

        Synchronous on purpose: lookup, create, append and timer reset happen
        without yielding to the event loop.
        """
        buffer = self._buffers.get(contact_key)
        if buffer is None:
            buffer = CoalesceBuffer()
            self._buffers[contact_key] = buffer
        elif buffer.expiry_task is not None:
            buffer.expiry_task.cancel()

        buffer.pending_parts.append(body_fragment)
        buffer.on_flush = on_flush
        buffer.expiry_task = asyncio.get_running_loop().create_task(self._expire(contact_key, buffer))

        logger.debug(
            "Fragment buffered",
            extra={"context": {"key": str(contact_key), "parts": len(buffer.pending_parts)}},
        )
        return buffer

    async def _expire(self, contact_key: Hashable, buffer: CoalesceBuffer) -> None:
        await self._sleep(self.quiet_period_seconds)

        # A superseding fragment cancels this task before the sleep returns;
        # from here on the flush is no longer cancellable.
        if self._buffers.get(contact_key) is not buffer:
            return
        del self._buffers[contact_key]
        joined = "\n".join(buffer.pending_parts)
        callback = buffer.on_flush

        task = asyncio.current_task()
        if task is not None:
            self._flushing.add(task)
        try:
            logger.info(
                "Flushing coalesced message",
                extra={"context": {"key": str(contact_key), "parts": len(buffer.pending_parts)}},
            )
            await callback(joined)
        except Exception as exc:
            logger.exception("Coalesced flush failed", extra={"context": {"key": str(contact_key)}})
            if self._on_error is not None:
                try:
                    await self._on_error(contact_key, exc)
                except Exception:
                    logger.exception("Flush error reporter failed", extra={"context": {"key": str(contact_key)}})
        finally:
            if task is not None:
                self._flushing.discard(task)

    def pending_keys(self) -> list[Hashable]:
        return list(self._buffers.keys())

    def has_pending(self, contact_key: Hashable) -> bool:
        return contact_key in self._buffers

    async def drain(self) -> None:
        """Wait for every buffered key to flush and every running flush to finish."""
        while self._buffers or self._flushing:
            tasks = [buffer.expiry_task for buffer in self._buffers.values() if buffer.expiry_task is not None]
            tasks.extend(self._flushing)
            if not tasks:
                break
            await asyncio.gather(*tasks, return_exceptions=True)
