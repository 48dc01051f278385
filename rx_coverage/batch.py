"""Bounded-concurrency batch runner with per-item fault isolation.

Ids are split into chunks of `concurrency`. Items within a chunk run in worker
threads and are joined settle-all; chunks run one after another.

Each batch owns a thread pool of `concurrency` workers, and an item holds its
slot until its thread returns, even after the item has timed out. A later item
waiting on a slot held by a hung thread spends its own timeout waiting, so no
more than `concurrency` items are ever running and a batch finishes within
roughly one item timeout per chunk.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

from rx_coverage.models import BatchError, BatchResult

logger = logging.getLogger(__name__)

CANCELLED_ERROR = "Batch cancelled before this item started"


def chunked(items: Sequence[str], size: int) -> list[list[str]]:
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


def _describe(exc: BaseException, timeout: float) -> str:
    if isinstance(exc, asyncio.TimeoutError | TimeoutError):
        return f"Timed out after {timeout:g}s"
    return str(exc) or exc.__class__.__name__


class BatchOrchestrator:
    def __init__(self, *, item_timeout_seconds: float = 60.0):
        self.item_timeout_seconds = item_timeout_seconds

    async def _run_item(
        self,
        executor: ThreadPoolExecutor,
        slots: asyncio.Semaphore,
        worker: Callable[[str], Any],
        item_id: str,
    ) -> Any:
        loop = asyncio.get_running_loop()

        def release(_: Future) -> None:
            # A timed-out thread can finish after the batch has returned and closed its loop
            if loop.is_closed():
                return
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(slots.release)

        async def attempt() -> Any:
            await slots.acquire()
            try:
                future = executor.submit(worker, item_id)
            except BaseException:
                slots.release()
                raise
            future.add_done_callback(release)
            return await asyncio.wrap_future(future)

        return await asyncio.wait_for(attempt(), timeout=self.item_timeout_seconds)

    async def run(
        self,
        ids: Sequence[str],
        worker: Callable[[str], Any],
        *,
        concurrency: int = 5,
        cancel_event: threading.Event | None = None,
    ) -> BatchResult:
        """Run `worker` over every id.

        Args:
            ids: Opportunity ids, processed in order
            worker: Blocking callable returning the item's result or raising
            concurrency: Chunk size, and so the peak number of in-flight items
            cancel_event: When set, remaining chunks are not started

        Returns:
            BatchResult with successes in `results` and failures in `errors`
        """
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")

        result = BatchResult(total=len(ids))
        chunks = chunked(list(ids), concurrency)
        slots = asyncio.Semaphore(concurrency)
        executor = ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="coverage-batch")

        try:
            for index, chunk in enumerate(chunks):
                if cancel_event is not None and cancel_event.is_set():
                    remaining = [item_id for rest in chunks[index:] for item_id in rest]
                    logger.info("Batch cancelled with %d items not started", len(remaining))
                    result.errors.extend(
                        BatchError(opportunity_id=item_id, error=CANCELLED_ERROR)
                        for item_id in remaining
                    )
                    result.cancelled = True
                    break

                outcomes = await asyncio.gather(
                    *(self._run_item(executor, slots, worker, item_id) for item_id in chunk),
                    return_exceptions=True,
                )
                for item_id, outcome in zip(chunk, outcomes):
                    if isinstance(outcome, BaseException):
                        logger.warning("Batch item %s failed: %s", item_id, outcome)
                        result.errors.append(
                            BatchError(
                                opportunity_id=item_id,
                                error=_describe(outcome, self.item_timeout_seconds),
                            )
                        )
                    else:
                        result.results.append(outcome)
        finally:
            # Do not join threads still running past their timeout
            executor.shutdown(wait=False, cancel_futures=True)

        logger.info(
            "Batch finished: %d ok, %d failed of %d",
            len(result.results),
            len(result.errors),
            result.total,
        )
        return result

    def run_sync(
        self,
        ids: Sequence[str],
        worker: Callable[[str], Any],
        *,
        concurrency: int = 5,
        cancel_event: threading.Event | None = None,
    ) -> BatchResult:
        return asyncio.run(
            self.run(ids, worker, concurrency=concurrency, cancel_event=cancel_event)
        )
