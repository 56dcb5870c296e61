from __future__ import annotations

import pytest

from tests.fakes import FakeBookingServer


@pytest.fixture()
def server() -> FakeBookingServer:
    return FakeBookingServer()
