"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.
"""
import sys
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from deckforge.generation.models import Chunk, Provider  # noqa: E402


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (API through TestClient)")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


class FakeClock:
    """Manually advanced monotonic clock for breaker and limiter tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep stand-in that records requested delays without waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


HR_CHUNK_TEXTS = [
    (
        "Onboarding programs introduce new employees to company policies and culture. "
        "A structured onboarding process lasts at least 90 days and includes a mentor assignment. "
        "Employees who complete onboarding report higher engagement in their first year."
    ),
    (
        "Performance reviews evaluate employee contributions against agreed objectives. "
        "Managers conduct formal performance reviews twice each year with written feedback. "
        "Calibration meetings keep ratings consistent across different departments."
    ),
    (
        "Compensation policy balances internal equity with external market rates. "
        "Salary bands are reviewed annually using benchmark surveys from industry partners. "
        "Bonuses depend on both individual performance and overall company results."
    ),
]


@pytest.fixture
def hr_chunks():
    """Three human-resources chunks from one module."""
    return [
        Chunk(
            chunk_id=f"hr-{i + 1}",
            text=text,
            source_file="hr101/module1.pdf",
            provider=Provider.LOCAL,
            slide_or_page=str(i + 1),
            heading=["Onboarding", "Performance Reviews", "Compensation"][i],
        )
        for i, text in enumerate(HR_CHUNK_TEXTS)
    ]
