"""Test configuration for the ad pipeline."""

import pytest


@pytest.fixture
def anyio_backend():
    return "asyncio"
