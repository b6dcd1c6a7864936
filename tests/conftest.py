from collections import Counter

import pytest

from warmstart.registry import ProviderRegistry


@pytest.fixture
def calls() -> Counter:
    """Counts how often each named factory ran."""
    return Counter()


@pytest.fixture
def registry() -> ProviderRegistry:
    return ProviderRegistry()
