import pytest

from zktools.client import ZKClient
from zktools.config import Settings
from zktools.session import SessionManager

from fakes import DEVICE_IP, FakeDevice, FakeNetwork


@pytest.fixture
def settings():
    return Settings(settle_delay=0)


@pytest.fixture
def device():
    dev = FakeDevice()
    dev.add_user(1, "348", "Alice", privilege=14)
    dev.add_user(2, "349", "Bob")
    dev.add_template(1, 0, b'\x4a\x53\x53\x32' * 100)
    dev.add_template(1, 5, b'\x11\x22\x33' * 200)
    dev.add_template(2, 3, b'\x99' * 512)
    return dev


@pytest.fixture
def network(device):
    return FakeNetwork({DEVICE_IP: device})


@pytest.fixture
def manager(network, settings):
    return SessionManager(transport_factory=network, settings=settings)


@pytest.fixture
def client(manager):
    c = ZKClient.connect(DEVICE_IP, manager=manager)
    yield c
    c.close()
