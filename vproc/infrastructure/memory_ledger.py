import logging
import math
import threading
from contextlib import contextmanager
from typing import Dict, Iterator
from pydantic import BaseModel
from vproc.domain.errors import InsufficientMemoryError

logger = logging.getLogger(__name__)


class MemoryStats(BaseModel):
    total: int
    used: int
    available: int
    usage_percentage: float
    reserved_operations: int


def format_bytes(num_bytes: int) -> str:
    """Format bytes to a human readable string (1024 base)."""
    sizes = ["Bytes", "KB", "MB", "GB", "TB"]
    if num_bytes <= 0:
        return "0 Bytes"
    i = min(int(math.floor(math.log(num_bytes) / math.log(1024))), len(sizes) - 1)
    return f"{round(num_bytes / math.pow(1024, i), 2):g} {sizes[i]}"


class ResourceLedger:
    """Admission control over a shared memory budget.

    All mutations happen under one lock so concurrent jobs see a consistent
    running total. ``reserve`` checks and records atomically, which keeps the
    sum of live reservations within the budget.
    """

    def __init__(self, budget: int):
        if budget <= 0:
            raise ValueError("Memory budget must be positive")
        self.budget = budget
        self._current_usage = 0
        self._reservations: Dict[str, int] = {}
        self._lock = threading.Lock()

    def _check(self, amount: int):
        if amount < 0:
            raise ValueError(f"Reservation amount must be non-negative, got {amount}")
        available = self.budget - self._current_usage
        if amount > available:
            raise InsufficientMemoryError(
                amount,
                available,
                f"Insufficient memory: required {format_bytes(amount)}, "
                f"available {format_bytes(available)}",
            )

    def check_available(self, amount: int):
        """Raises InsufficientMemoryError if amount exceeds the unreserved budget."""
        with self._lock:
            self._check(amount)

    def reserve(self, operation_id: str, amount: int):
        with self._lock:
            if operation_id in self._reservations:
                raise ValueError(f"Operation {operation_id} already holds a reservation")
            self._check(amount)
            self._reservations[operation_id] = amount
            self._current_usage += amount
        logger.debug(f"Reserved {format_bytes(amount)} for {operation_id}")

    def release(self, operation_id: str):
        """Releases a reservation. Unknown ids are a no-op."""
        with self._lock:
            amount = self._reservations.pop(operation_id, None)
            if amount is None:
                return
            self._current_usage -= amount
        logger.debug(f"Released {format_bytes(amount)} for {operation_id}")

    @contextmanager
    def reservation(self, operation_id: str, amount: int) -> Iterator[int]:
        """Reserves for the duration of the block and always releases on exit."""
        self.reserve(operation_id, amount)
        try:
            yield amount
        finally:
            self.release(operation_id)

    @property
    def current_usage(self) -> int:
        with self._lock:
            return self._current_usage

    def holds(self, operation_id: str) -> bool:
        with self._lock:
            return operation_id in self._reservations

    def usage_percentage(self) -> float:
        with self._lock:
            return self._current_usage / self.budget * 100

    def stats(self) -> MemoryStats:
        with self._lock:
            return MemoryStats(
                total=self.budget,
                used=self._current_usage,
                available=self.budget - self._current_usage,
                usage_percentage=self._current_usage / self.budget * 100,
                reserved_operations=len(self._reservations),
            )
