"""
Test configuration and fixtures for HKChat tests.

Provides:
- Test configuration and JWT generation
- Fake transport connections recording what they were sent
- A temporary SQLite store with seeded users and chats
- Fake signaling, media and peer-connection collaborators for the
  client call session
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from HKChat.core.message.protocol import Event


@dataclass
class TestConfig:
    """Configuration for relay tests."""
    host: str = "127.0.0.1"
    timeout: float = 5.0
    typing_expiry: float = 0.05
    accept_timeout: float = 0.1
    log_level: str = "DEBUG"

    def ws_url(self, port: int, token: str) -> str:
        return f"ws://{self.host}:{port}?token={token}"


class TestDataGenerator:
    """Generate test data for relay tests."""

    @staticmethod
    def get_jwt_secret() -> str:
        """Get the JWT secret from config."""
        from HKChat.config import config
        return config.JWT_SECRET

    @staticmethod
    def generate_jwt_token(user_id: Any, secret: str = None, claim: str = "id",
                           expires_in: int = 3600) -> str:
        """Generate a test JWT token using the config secret."""
        import jwt

        if secret is None:
            from HKChat.config import config
            secret = config.JWT_SECRET

        payload = {
            claim: user_id,
            "exp": int(time.time()) + expires_in,
            "iat": int(time.time()),
        }
        return jwt.encode(payload, secret, algorithm="HS256")


# ---------------- relay fakes ----------------
class FakeConnection:
    """Connection handle that records every frame sent to it."""

    _counter = 0

    def __init__(self, user_id: Any, conn_id: Optional[str] = None, open_: bool = True):
        FakeConnection._counter += 1
        self.user_id = user_id
        self.conn_id = conn_id or f"conn-{FakeConnection._counter}"
        self.rooms = set()
        self.sent: List[str] = []
        self._open = open_

    async def send(self, message: str) -> bool:
        if not self._open:
            return False
        self.sent.append(message)
        return True

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self._open = False

    def is_open(self) -> bool:
        return self._open

    def drop(self) -> None:
        """Simulate a transport that went away without a close."""
        self._open = False

    def events(self) -> List[Event]:
        return [Event.deserialize(raw) for raw in self.sent]

    def events_named(self, name: str) -> List[Dict[str, Any]]:
        return [e.data for e in self.events() if e.name == name]

    def __repr__(self) -> str:
        return f"FakeConnection({self.user_id!r}, {self.conn_id!r})"


class RecordingBroadcaster:
    """Broadcaster that records relays instead of delivering them."""

    def __init__(self, online: Optional[set] = None):
        self.online = online
        self.calls: List[tuple] = []

    async def to_room(self, chat_id, event_name, payload, sender=None):
        self.calls.append(("room", chat_id, event_name, payload))
        return []

    async def to_user(self, user_id, event_name, payload):
        from HKChat.core.server.routing import DeliveryResult, DeliveryStatus
        self.calls.append(("user", user_id, event_name, payload))
        if self.online is not None and user_id not in self.online:
            return []
        return [DeliveryResult(DeliveryStatus.DELIVERED, user_id, f"{user_id}-conn")]

    async def to_all_except(self, event_name, payload, sender=None):
        self.calls.append(("all", None, event_name, payload))
        return []

    def sent_to(self, user_id, event_name=None):
        return [c[3] for c in self.calls
                if c[0] == "user" and c[1] == user_id and (event_name is None or c[2] == event_name)]


# ---------------- client fakes ----------------
class FakeSignaling:
    """In-memory stand-in for SignalingClient."""

    def __init__(self):
        self.emitted: List[tuple] = []
        self._handlers: Dict[str, list] = {}

    def on(self, event_name, handler):
        self._handlers.setdefault(event_name, []).append(handler)

    def off(self, event_name, handler):
        self._handlers.get(event_name, []).remove(handler)

    async def emit(self, event_name, data=None):
        self.emitted.append((event_name, data or {}))

    async def deliver(self, event_name, data):
        for handler in list(self._handlers.get(event_name, [])):
            result = handler(data)
            if asyncio.iscoroutine(result):
                await result

    def emitted_named(self, event_name):
        return [data for name, data in self.emitted if name == event_name]


class FakeMedia:
    def __init__(self, call_type: str):
        self.kinds = {"audio", "video"} if call_type == "video" else {"audio"}
        self.enabled = {kind: True for kind in self.kinds}
        self.stopped = False

    def has(self, kind):
        return kind in self.kinds

    def set_enabled(self, kind, enabled):
        if kind not in self.kinds:
            return False
        self.enabled[kind] = enabled
        return True

    def is_enabled(self, kind):
        return self.enabled.get(kind, False)

    def stop(self):
        self.stopped = True


class FakeMediaProvider:
    """Media provider; can fail or be held until ``release()``."""

    def __init__(self, fail: bool = False, hold: bool = False):
        self.fail = fail
        self.acquired: List[FakeMedia] = []
        self._gate = asyncio.Event()
        if not hold:
            self._gate.set()

    def release(self):
        self._gate.set()

    async def acquire(self, call_type):
        from HKChat.core.client.utils.exceptions import MediaAcquisitionError
        await self._gate.wait()
        if self.fail:
            raise MediaAcquisitionError("Permission denied")
        media = FakeMedia(call_type)
        self.acquired.append(media)
        return media


class FakePeerConnection:
    def __init__(self, on_ice_candidate=None, on_state_change=None, on_track=None,
                 fail_remote: bool = False, hold_remote: bool = False,
                 bad_candidates=(), trickle=()):
        self.on_ice_candidate = on_ice_candidate
        self.on_state_change = on_state_change
        self.on_track = on_track
        self.fail_remote = fail_remote
        self.bad_candidates = list(bad_candidates)
        self.trickle = list(trickle)
        self.remote_description = None
        self.applied: List[Any] = []
        self.media = None
        self.closed = False
        self._remote_gate = asyncio.Event()
        if not hold_remote:
            self._remote_gate.set()

    def release_remote(self):
        self._remote_gate.set()

    def add_local_media(self, media):
        self.media = media

    async def _gather(self):
        for candidate in self.trickle:
            await self.on_ice_candidate(candidate)

    async def create_offer(self):
        await self._gather()
        return {"type": "offer", "sdp": "v=0 offer"}

    async def create_answer(self):
        await self._gather()
        return {"type": "answer", "sdp": "v=0 answer"}

    async def set_remote_description(self, description):
        await self._remote_gate.wait()
        if self.fail_remote:
            raise ValueError("bad remote description")
        self.remote_description = description

    async def add_ice_candidate(self, candidate):
        if self.remote_description is None:
            raise RuntimeError("remote description not set")
        if candidate in self.bad_candidates:
            raise ValueError("bad candidate")
        self.applied.append(candidate)

    async def close(self):
        self.closed = True


class FakePeerFactory:
    """Creates FakePeerConnections with preset behaviour and keeps them."""

    def __init__(self, **options):
        self.options = options
        self.created: List[FakePeerConnection] = []

    def __call__(self, **callbacks):
        pc = FakePeerConnection(**callbacks, **self.options)
        self.created.append(pc)
        return pc

    @property
    def last(self) -> FakePeerConnection:
        return self.created[-1]


async def settle(rounds: int = 5) -> None:
    """Let pending callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture(scope="session")
def test_config() -> TestConfig:
    """Provide test configuration."""
    return TestConfig()


@pytest.fixture(scope="session")
def test_data_generator() -> TestDataGenerator:
    """Provide test data generator."""
    return TestDataGenerator()


@pytest.fixture
def sqlite_store(tmp_path):
    """A temporary store seeded with alice(1), bob(2), carol(3) and chat 1 between alice and bob."""
    from HKChat.core.server.storage_sqlite import SQLiteStore

    store = SQLiteStore(str(tmp_path / "hkchat_test.db"))
    store.create_user("Alice", "alice.png")
    store.create_user("Bob")
    store.create_user("Carol")
    store.create_chat([1, 2])
    yield store
    store.close()


@pytest.fixture
def presence():
    from HKChat.core.server.presence import PresenceRegistry
    return PresenceRegistry()


@pytest.fixture
def rooms(presence):
    from HKChat.core.server.rooms import RoomMembershipManager
    return RoomMembershipManager(presence)


@pytest.fixture
def router(presence, rooms):
    from HKChat.core.server.routing import EventRouter
    return EventRouter(presence, rooms)


@pytest_asyncio.fixture
async def relay_instance(test_config: TestConfig, sqlite_store):
    """A real relay listening on a free local port."""
    from HKChat.core.logging import configure_logging, LogConfig
    from HKChat.core.server import RealtimeRelay

    configure_logging(LogConfig(level=test_config.log_level, console_output=True, file_output=False))

    relay = RealtimeRelay(store=sqlite_store, typing_expiry=test_config.typing_expiry, health_check_interval=60)
    await relay.start(test_config.host, 0)
    yield relay
    await relay.stop()


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
