import pytest

from commands import CommandDispatcher
from database import DatabaseManager
from errors import GatewayFailure, TransportUnavailable
from fanout import RealtimeFanout
from notifications import AlertNotifier
from pipeline import IngestionPipeline
from readings import ReadingStore
from registry import DeviceRegistry


class FakeSubscriber:
    def __init__(self, fail=False):
        self.fail = fail
        self.messages = []

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket closed")
        self.messages.append(data)

    def events(self, name=None):
        return [m for m in self.messages if name is None or m["event"] == name]


class FakePublisher:
    def __init__(self, fail=False):
        self.fail = fail
        self.commands = []

    async def publish_pump_command(self, command):
        if self.fail:
            raise TransportUnavailable("broker caído")
        self.commands.append(command)


class FakeGateway:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def send(self, alert):
        if self.fail:
            raise GatewayFailure("smtp caído")
        self.sent.append(alert)


@pytest.fixture
def db(tmp_path):
    return DatabaseManager(str(tmp_path / "test.db"))


@pytest.fixture
def registry(db):
    return DeviceRegistry(db)


@pytest.fixture
def readings(db):
    return ReadingStore(db)


@pytest.fixture
def subscriber():
    return FakeSubscriber()


@pytest.fixture
def fanout(subscriber):
    fanout = RealtimeFanout()
    fanout.subscribe(subscriber)
    return fanout


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier(gateway):
    return AlertNotifier(gateway, max_pending=5)


@pytest.fixture
def pipeline(registry, readings, fanout, notifier):
    return IngestionPipeline(registry, readings, fanout, notifier, offline_after_seconds=300)


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def dispatcher(registry, publisher, fanout):
    return CommandDispatcher(registry, publisher, fanout)
