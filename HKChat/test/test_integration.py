"""
End-to-end tests: a real relay on a local port and real websocket clients.

Call media and peer connections are fakes; everything between the two
call sessions goes through the relay.
"""

import asyncio
from collections import defaultdict

import pytest
import pytest_asyncio

from HKChat.core.client import ClientChatState, SignalingClient
from HKChat.core.client.call import CallSessionManager, CallState
from HKChat.core.client.utils.exceptions import AuthenticationError
from HKChat.test.conftest import FakeMediaProvider, FakePeerFactory, TestDataGenerator


async def wait_until(predicate, timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class Recorder:
    """Collects every payload received per event name."""

    def __init__(self, client: SignalingClient, *event_names: str):
        self.events = defaultdict(list)
        for name in event_names:
            client.on(name, self.events[name].append)

    def __getitem__(self, name):
        return self.events[name]


@pytest_asyncio.fixture
async def open_client(relay_instance, test_config):
    """Factory connecting an authenticated client and waiting until the relay registered it."""
    opened = []

    async def connect(user_id, token=None, wait=True):
        before = len(relay_instance.presence.handles_of(user_id))
        token = token or TestDataGenerator.generate_jwt_token(user_id)
        client = SignalingClient(token, uri=test_config.ws_url(relay_instance.port, token))
        await client.connect()
        opened.append(client)
        if wait:
            await wait_until(lambda: len(relay_instance.presence.handles_of(user_id)) == before + 1)
        return client

    yield connect
    for client in opened:
        await client.close()


def call_session(user_id, client):
    factory = FakePeerFactory()
    session = CallSessionManager(
        user_id,
        media_provider=FakeMediaProvider(),
        peer_factory=factory,
        accept_timeout=5,
        ended_linger=0,
        ringtone_interval=10,
        ringback_interval=10,
    )
    session.bind(client)
    return session, factory


@pytest.mark.integration
class TestRelayEndToEnd:
    """Scenarios across real connections."""

    @pytest.mark.asyncio
    async def test_message_reaches_room_member_not_sender(self, open_client):
        alice = await open_client(1)
        bob = await open_client(2)
        carol = await open_client(3)
        at_alice = Recorder(alice, "message:receive")
        at_bob = Recorder(bob, "message:receive")
        at_carol = Recorder(carol, "message:receive")

        await alice.emit("message:send", {"chatId": 1, "message": {"id": 1, "content": "hi"}})

        await wait_until(lambda: at_bob["message:receive"])
        assert at_bob["message:receive"] == [{"chatId": 1, "message": {"id": 1, "content": "hi"}}]
        await asyncio.sleep(0.05)
        assert at_alice["message:receive"] == []
        assert at_carol["message:receive"] == []

    @pytest.mark.asyncio
    async def test_video_call_connects_and_survives_candidate_race(self, open_client):
        alice = await open_client(1)
        bob = await open_client(2)
        a_calls, a_peers = call_session(1, alice)
        b_calls, b_peers = call_session(2, bob)

        try:
            await a_calls.initiate({"id": 2}, "video")
            await wait_until(lambda: b_calls.state is CallState.INCOMING)
            assert b_calls.remote_user["display_name"] == "Alice"
            assert b_calls.call_type == "video"

            # alice's candidate reaches bob before he has the offer applied
            early = {"candidate": "candidate:1 1 udp 1 10.0.0.1 5000 typ host", "sdpMid": "0", "sdpMLineIndex": 0}
            await a_peers.last.on_ice_candidate(early)
            await wait_until(lambda: b_calls.pending_candidates == 1)

            await b_calls.accept()
            assert b_calls.state is CallState.CONNECTED
            assert b_peers.last.applied == [early]
            assert b_peers.last.remote_description == {"type": "offer", "sdp": "v=0 offer"}

            await wait_until(lambda: a_calls.state is CallState.CONNECTED)
            assert a_peers.last.remote_description == {"type": "answer", "sdp": "v=0 answer"}

            await a_calls.hangup()
            await wait_until(lambda: b_calls.state is CallState.IDLE)
        finally:
            await a_calls.close()
            await b_calls.close()

    @pytest.mark.asyncio
    async def test_busy_callee_is_rejected_by_relay(self, open_client, relay_instance):
        alice = await open_client(1)
        bob = await open_client(2)
        carol = await open_client(3)
        a_calls, _ = call_session(1, alice)
        b_calls, _ = call_session(2, bob)
        c_calls, _ = call_session(3, carol)
        at_bob = Recorder(bob, "call:incoming")
        at_carol = Recorder(carol, "call:rejected")

        try:
            await a_calls.initiate({"id": 2})
            await wait_until(lambda: b_calls.state is CallState.INCOMING)
            await b_calls.accept()
            await wait_until(lambda: a_calls.state is CallState.CONNECTED)

            await c_calls.initiate({"id": 2})
            await wait_until(lambda: at_carol["call:rejected"])

            assert at_carol["call:rejected"] == [{"userId": 2}]
            await wait_until(lambda: c_calls.state is CallState.IDLE)
            assert len(at_bob["call:incoming"]) == 1
            assert b_calls.state is CallState.CONNECTED
            assert b_calls.remote_id == 1
        finally:
            for calls in (a_calls, b_calls, c_calls):
                await calls.close()

    @pytest.mark.asyncio
    async def test_disconnect_ends_call_for_peer(self, open_client, relay_instance):
        alice = await open_client(1)
        bob = await open_client(2)
        a_calls, _ = call_session(1, alice)
        b_calls, _ = call_session(2, bob)

        try:
            await a_calls.initiate({"id": 2})
            await wait_until(lambda: b_calls.state is CallState.INCOMING)
            await b_calls.accept()

            await alice.close()
            await wait_until(lambda: b_calls.state is CallState.IDLE)
            assert len(relay_instance.calls.directory) == 0
        finally:
            await a_calls.close()
            await b_calls.close()

    @pytest.mark.asyncio
    async def test_offline_only_after_last_tab_closes(self, open_client, relay_instance):
        observer = await open_client(2)
        seen = Recorder(observer, "user:online")

        tab1 = await open_client(1)
        tab2 = await open_client(1)
        await wait_until(lambda: seen["user:online"])
        assert seen["user:online"] == [{"userId": 1, "isOnline": True}]

        await tab1.close()
        await wait_until(lambda: len(relay_instance.presence.handles_of(1)) == 1)
        await asyncio.sleep(0.05)
        assert len(seen["user:online"]) == 1

        await tab2.close()
        await wait_until(lambda: len(seen["user:online"]) == 2)
        offline = seen["user:online"][1]
        assert offline["userId"] == 1 and offline["isOnline"] is False
        assert offline["lastSeen"]

        await relay_instance.flush_writes()
        assert relay_instance.store.get_presence(1) == {"is_online": False, "last_seen": offline["lastSeen"]}

    @pytest.mark.asyncio
    async def test_typing_indicator_clears_without_stop(self, open_client):
        alice = await open_client(1)
        bob = await open_client(2)
        state = ClientChatState(2, typing_expiry=0.05)
        state.bind(bob)

        try:
            await alice.emit("typing:start", {"chatId": 1})
            await wait_until(lambda: state.typing_in(1) is not None)
            assert state.typing_in(1).user_name == "Alice"

            await wait_until(lambda: state.typing_in(1) is None, timeout=1.0)
        finally:
            state.close()

    @pytest.mark.asyncio
    async def test_bad_token_is_refused(self, open_client, relay_instance):
        client = await open_client(1, token="not-a-jwt", wait=False)

        with pytest.raises(AuthenticationError) as excinfo:
            await asyncio.wait_for(client.wait_closed(), timeout=3)

        assert excinfo.value.details == {"code": "INVALID_TOKEN"}
        assert relay_instance.get_active_users() == []
