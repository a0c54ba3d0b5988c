import asyncio


class HealthGauge:
    """
    Rough readiness signal driven by unexpected errors.

    Every error that escapes normal flow-control (a 500, a failed background sweep) raises the
    level. A background task lowers it by one on each tick. A burst of errors pushes the level over
    the threshold and `/internal/ready` starts failing until the burst has drained.
    """

    def __init__(self, level: int = 0, threshold: int = 100) -> None:
        self._level = level
        self._threshold = threshold
        self._lock = asyncio.Lock()

    async def record_failure(self, weight: int = 1) -> int:
        async with self._lock:
            self._level += int(weight)
            return self._level

    async def decay(self) -> None:
        async with self._lock:
            self._level = max(0, self._level - 1)

    async def is_healthy(self) -> bool:
        async with self._lock:
            return self._level <= self._threshold
