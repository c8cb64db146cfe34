from __future__ import annotations

import pytest

from mintwatch.logging_utils import reset_warn_once_cache


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_warn_once() -> None:
    reset_warn_once_cache()
