"""Processed-audio and API cost accounting."""

import logging

logger = logging.getLogger(__name__)

DEFAULT_COST_PER_MINUTE = 0.006


class SessionAccountant:
    """Running total of transcribed audio and its estimated cost."""

    def __init__(self, cost_per_minute: float = DEFAULT_COST_PER_MINUTE):
        self.cost_per_minute = cost_per_minute
        self.total_seconds = 0.0
        self.chunks_recorded = 0

    def record(self, duration_seconds: float) -> None:
        if duration_seconds < 0:
            raise ValueError(f"duration must be non-negative, got {duration_seconds}")
        self.total_seconds += duration_seconds
        self.chunks_recorded += 1

    def estimated_cost_usd(self) -> float:
        return (self.total_seconds / 60) * self.cost_per_minute

    def to_record(self) -> dict:
        return {
            "total_seconds": self.total_seconds,
            "chunks_recorded": self.chunks_recorded,
            "cost_per_minute": self.cost_per_minute,
        }

    @classmethod
    def from_record(cls, record: dict, cost_per_minute: float | None = None) -> "SessionAccountant":
        accountant = cls(cost_per_minute if cost_per_minute is not None else record.get("cost_per_minute", DEFAULT_COST_PER_MINUTE))
        accountant.total_seconds = float(record.get("total_seconds", 0.0))
        accountant.chunks_recorded = int(record.get("chunks_recorded", 0))
        return accountant
