from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, Optional, Tuple

Key = Tuple[str, str, str]


class TestResult(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    UNSUPPORTED = "unsupported"

    __test__ = False

    def symbol(self) -> str:
        if self is TestResult.SUCCEEDED:
            return "✓"
        elif self is TestResult.FAILED:
            return "✕"
        return "?"


@dataclass(frozen=True)
class Outcome:
    result: TestResult
    reason: str = ""
    value: Optional[float] = None


@dataclass(frozen=True)
class MeasurementResult:
    result: TestResult
    details: str = ""


@dataclass
class ResultsMatrix:
    """
    Outcomes of one invocation, keyed by (server, client, test case name).

    Cells are append-only: recording the same key twice is an error.
    """

    results: Dict[Key, TestResult] = field(default_factory=dict)
    measurements: Dict[Key, MeasurementResult] = field(default_factory=dict)

    def record(self, server: str, client: str, name: str, result: TestResult) -> None:
        key = (server, client, name)
        if key in self.results:
            raise ValueError("result for %s already recorded" % (key,))
        self.results[key] = result

    def record_measurement(
        self, server: str, client: str, name: str, result: MeasurementResult
    ) -> None:
        key = (server, client, name)
        if key in self.measurements:
            raise ValueError("measurement for %s already recorded" % (key,))
        self.measurements[key] = result

    def get(self, server: str, client: str, name: str) -> Optional[TestResult]:
        return self.results.get((server, client, name))

    def get_measurement(
        self, server: str, client: str, name: str
    ) -> Optional[MeasurementResult]:
        return self.measurements.get((server, client, name))

    def cells(self) -> Iterator[Tuple[Key, TestResult]]:
        yield from self.results.items()
        for key, measurement in self.measurements.items():
            yield key, measurement.result

    def __len__(self) -> int:
        return len(self.results) + len(self.measurements)
