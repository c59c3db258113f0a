import pytest

from fakes import FakePublisher, InMemoryOrderStore, make_detail


@pytest.fixture
def details():
    return [make_detail(str(i)) for i in range(1, 4)]


@pytest.fixture
def store(details):
    return InMemoryOrderStore(details)


@pytest.fixture
def dcm4chee():
    return FakePublisher("dcm4chee")


@pytest.fixture
def orthanc():
    return FakePublisher("orthanc")


@pytest.fixture
def sleeps():
    """Collects the delays requested between retries instead of sleeping."""
    return []
