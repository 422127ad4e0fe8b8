import io

import pytest


@pytest.fixture
def sink() -> io.StringIO:
    return io.StringIO()
