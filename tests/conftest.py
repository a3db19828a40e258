import pytest

from callcore import CallConfig
from fakes import FakeDevices, FakeSignaling, PCFactory


@pytest.fixture
def devices():
    return FakeDevices()


@pytest.fixture
def signaling():
    return FakeSignaling("me")


@pytest.fixture
def pcs():
    return PCFactory()


@pytest.fixture
def config():
    return CallConfig(negotiation_timeout=30.0, connect_timeout=30.0)
