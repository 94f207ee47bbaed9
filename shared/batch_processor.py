"""Bounded-concurrency batch dispatch for external API calls."""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BatchProcessor:
    """Runs an async operation over items in batches with a concurrency cap."""

    def __init__(
        self,
        batch_size: int = 50,
        concurrency: int = 10,
        delay_between_batches: float = 0.1,
    ):
        """
        Initialize batch processor.

        Args:
            batch_size: Number of items per batch
            concurrency: Maximum operations in flight within a batch
            delay_between_batches: Seconds to pause between batches
        """
        self.batch_size = max(1, batch_size)
        self.concurrency = max(1, concurrency)
        self.delay_between_batches = delay_between_batches

    async def process(
        self,
        items: Sequence[T],
        operation: Callable[[T], Awaitable[Any]],
    ) -> list[Any]:
        """
        Apply operation to every item. No retries.

        Returns one entry per item, in input order. An operation that raised
        is represented by its exception.
        """
        results: list[Any] = []
        if not items:
            return results

        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(item: T) -> Any:
            async with semaphore:
                return await operation(item)

        total_batches = (len(items) + self.batch_size - 1) // self.batch_size
        for index in range(total_batches):
            batch = items[index * self.batch_size:(index + 1) * self.batch_size]
            batch_results = await asyncio.gather(
                *(run(item) for item in batch), return_exceptions=True
            )

            for item_result in batch_results:
                if isinstance(item_result, Exception):
                    logger.error(
                        f"Batch operation failed: {item_result}", exc_info=item_result
                    )
            results.extend(batch_results)

            logger.debug(f"Processed batch {index + 1}/{total_batches} ({len(batch)} items)")

            if index < total_batches - 1 and self.delay_between_batches > 0:
                await asyncio.sleep(self.delay_between_batches)

        return results
