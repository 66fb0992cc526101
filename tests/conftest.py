import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
# The CDKTF app imports its helpers as top-level modules
sys.path.insert(0, str(ROOT / "infra"))


class FakeClock:
    """Time only moves when the code under test sleeps."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
