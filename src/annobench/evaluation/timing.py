"""Wall-clock timing of annotation methods."""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

import polars as pl
from loguru import logger


@dataclass
class RuntimeRecord:
    """Runtime of one method."""

    method: str
    seconds: float
    source: str = "measured"  # "measured" in this process, "external" from a sidecar
    succeeded: bool = True


class TimingRecorder:
    """Collect per-method wall-clock runtimes.

    Example:
        >>> timer = TimingRecorder()
        >>> with timer.time("singler"):
        ...     run_singler()
        >>> timer.to_frame()
    """

    def __init__(self) -> None:
        self.records: dict[str, RuntimeRecord] = {}

    @contextmanager
    def time(self, method: str) -> Iterator[None]:
        """Time the enclosed block; failures are recorded then re-raised."""
        start = time.perf_counter()
        succeeded = False
        try:
            yield
            succeeded = True
        finally:
            elapsed = time.perf_counter() - start
            self.records[method] = RuntimeRecord(method, elapsed, "measured", succeeded)
            logger.info(f"{method} finished in {elapsed:.2f}s" + ("" if succeeded else " (failed)"))

    def add(self, method: str, seconds: float, source: str = "external") -> None:
        """Record a runtime measured elsewhere (replaces any existing record)."""
        if seconds < 0:
            raise ValueError(f"Runtime must be non-negative, got {seconds}")
        self.records[method] = RuntimeRecord(method, float(seconds), source, True)

    def get(self, method: str) -> float | None:
        record = self.records.get(method)
        return record.seconds if record else None

    def to_frame(self) -> pl.DataFrame:
        """Runtime table sorted from fastest to slowest."""
        if not self.records:
            return pl.DataFrame(
                schema={
                    "method": pl.Utf8,
                    "seconds": pl.Float64,
                    "source": pl.Utf8,
                    "succeeded": pl.Boolean,
                }
            )
        return pl.DataFrame(
            [
                {
                    "method": r.method,
                    "seconds": r.seconds,
                    "source": r.source,
                    "succeeded": r.succeeded,
                }
                for r in self.records.values()
            ]
        ).sort("seconds")
