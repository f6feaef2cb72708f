"""Bounded batches for capping per-request fan-out."""

from typing import Generic, Iterable, Iterator, TypeVar

T = TypeVar("T")


class BatchFullError(RuntimeError):
    """Raised when an item is added to a batch that already holds `max_size` items."""


class BoundedBatch(Generic[T]):
    """
    Collects items up to a hard cap.

    Callers must `flush()` a full batch before adding more; adding past the
    cap raises instead of growing silently.
    """

    def __init__(self, max_size: int):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self._items: list[T] = []

    def add(self, item: T) -> None:
        if self.is_full:
            raise BatchFullError(f"Batch is full ({self.max_size} items); flush it first")
        self._items.append(item)

    @property
    def is_full(self) -> bool:
        return len(self._items) >= self.max_size

    def flush(self) -> list[T]:
        """Return the pending items and empty the batch."""
        items, self._items = self._items, []
        return items

    def __len__(self) -> int:
        return len(self._items)


def chunked(items: Iterable[T], max_size: int) -> Iterator[list[T]]:
    """Yield successive flushed batches of at most `max_size` items."""
    batch: BoundedBatch[T] = BoundedBatch(max_size)
    for item in items:
        batch.add(item)
        if batch.is_full:
            yield batch.flush()
    if len(batch):
        yield batch.flush()
