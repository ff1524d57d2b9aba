import pytest

from ocimeta.oci.client import Client
from tests.fakes import REGISTRY, FakeRegistry


@pytest.fixture
def registry() -> FakeRegistry:
    """Return an empty in-memory registry"""
    return FakeRegistry()


@pytest.fixture
def client(registry) -> Client:
    """Return a client talking to the in-memory registry"""
    with Client(registry_url=f"https://{REGISTRY}", transport=registry.transport) as c:
        yield c
