from __future__ import annotations

import pytest

from fakes import FakeLocalProvider, FakeTransport
from hybrid_llm.core.client import HybridClient
from hybrid_llm.core.session import SessionManager


@pytest.fixture()
def provider() -> FakeLocalProvider:
    return FakeLocalProvider()


@pytest.fixture()
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def client(provider: FakeLocalProvider, transport: FakeTransport) -> HybridClient:
    return HybridClient(transport, SessionManager(provider))
