# =============================================================================
# Shared Test Fixtures
# =============================================================================
#
# Async services are driven with `_run(coro)` helpers that use the current
# event loop, so each test gets a fresh loop installed as current.
# =============================================================================

import asyncio

import pytest


@pytest.fixture(autouse=True)
def event_loop_per_test():
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    yield loop
    loop.close()
    asyncio.set_event_loop(None)
