import pytest

from citerag.core.cache import MemoryQueryCache


@pytest.fixture
def cache() -> MemoryQueryCache:
    return MemoryQueryCache()
