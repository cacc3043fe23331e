from __future__ import annotations

from collections.abc import Iterator

import pytest

from localcal.store import ConnectionStore


@pytest.fixture
def store() -> Iterator[ConnectionStore]:
    s = ConnectionStore(":memory:")
    try:
        yield s
    finally:
        s.close()
