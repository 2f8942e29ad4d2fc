"""
Shared fixtures for query cache tests.
"""

import pytest_asyncio

from query_cache.client import QueryClient
from shared.test_helpers import ManualScheduler, create_test_settings, flush


@pytest_asyncio.fixture
async def client():
    """Client on virtual time with retries off by default."""
    client = QueryClient(settings=create_test_settings(), scheduler=ManualScheduler())
    yield client
    client.shutdown()
    await flush()
