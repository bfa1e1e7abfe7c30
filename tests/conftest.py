"""
Pytest configuration for Relay Bus tests.
"""

from __future__ import annotations

import pytest
import pytest_asyncio


@pytest_asyncio.fixture
async def event_bus():
    """Create a fresh EventBus instance for testing."""
    from relay_bus import EventBus

    bus = EventBus(tracing=False)
    yield bus
    # Cleanup
    await bus.shutdown(timeout=1.0)


@pytest.fixture
def collected_errors(event_bus):
    """Errors delivered to the bus error channel, in order."""
    errors: list[BaseException] = []
    event_bus.on_error(errors.append)
    return errors
