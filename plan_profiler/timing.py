import logging
import time
from dataclasses import dataclass
from typing import Callable, Tuple, TypeVar

from .config import DEFAULT_REPETITIONS
from .errors import InvalidInput

T = TypeVar("T")

STAT_OPTIONS = ("median", "average")


@dataclass(frozen=True)
class SampleSet:
    """Ascending per-call durations (ms) for one measured phase."""
    phase: str
    samples: Tuple[float, ...]

    def __post_init__(self):
        if not self.samples:
            raise InvalidInput(f"{self.phase}: sample set must not be empty")
        if any(s < 0 for s in self.samples):
            raise InvalidInput(f"{self.phase}: negative duration in sample set")
        object.__setattr__(self, "samples", tuple(sorted(float(s) for s in self.samples)))

    @property
    def count(self) -> int:
        return len(self.samples)

    @property
    def median(self) -> float:
        # element at count // 2 of the sorted samples, no interpolation
        return self.samples[len(self.samples) // 2]

    @property
    def mean(self) -> float:
        return sum(self.samples) / len(self.samples)

    def pick(self, option: str = "median") -> float:
        option = (option or "median").lower()
        if option == "average":
            return self.mean
        if option == "median":
            return self.median
        raise InvalidInput(f"Unknown statistic '{option}' (choose from {', '.join(STAT_OPTIONS)})")

    def summary(self) -> dict:
        return {
            "phase": self.phase,
            "samples": list(self.samples),
            "median": self.median,
            "mean": self.mean,
        }


class TimingSampler:
    def __init__(self, clock: Callable[[], int] = time.perf_counter_ns):
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    def sample(self, phase: str, operation: Callable[[], T],
               repetitions: int = DEFAULT_REPETITIONS) -> Tuple[T, SampleSet]:
        """
        Call `operation` `repetitions` times back to back and time each call.

        Returns the value produced by the last call and the sorted samples.
        The first exception raised by `operation` propagates unchanged and
        the samples collected so far are dropped.
        """
        if isinstance(repetitions, bool) or not isinstance(repetitions, int) or repetitions < 1:
            raise InvalidInput(f"{phase}: repetitions must be >= 1, got {repetitions!r}")

        durations = []
        result = None
        for _ in range(repetitions):
            t0 = self.clock()
            result = operation()
            t1 = self.clock()
            durations.append((t1 - t0) / 1_000_000)

        samples = SampleSet(phase, tuple(durations))
        self.logger.debug("%s: %d samples, median %.3f ms", phase, samples.count, samples.median)
        return result, samples
