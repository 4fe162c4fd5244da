"""
Client startup module for HKChat application.
Connects to the relay and logs the live events the chat state follows.
"""

import asyncio
import logging

from HKChat.core.client import ClientChatState, SignalingClient
from HKChat.core.client.call import CallHookPhase, CallSessionManager
from HKChat.core.client.utils import AuthenticationError, WsConnectionError
from HKChat.core.logging import auto_configure

__all__ = ['client']

logger = logging.getLogger(__name__)


def client(token, user_id, host=None, port=None):
    """
    Start a listening client.

    Args:
        token (str): JWT issued for the user
        user_id: Identity carried by the token
        host (str): Relay host
        port (int): Relay port
    """
    auto_configure()

    async def listen():
        signaling = SignalingClient(token, host=host, port=port)
        state = ClientChatState(user_id, on_change=lambda what: logger.info("%s changed", what))
        calls = CallSessionManager(user_id)
        state.bind(signaling)
        calls.bind(signaling)
        calls.register_hook(CallHookPhase.ENTER, lambda ctx: print(f"[call] {ctx.previous.value} -> {ctx.state.value}"))
        calls.register_hook(CallHookPhase.RINGTONE, lambda ctx: print("\a[call] ring ring"))

        async with signaling:
            print(f"Connected to {signaling.host}:{signaling.port} as {user_id}")
            try:
                await signaling.wait_closed()
            finally:
                await calls.close()
                state.close()

    try:
        asyncio.run(listen())
    except AuthenticationError as e:
        print(f"Refused: {e}")
    except WsConnectionError as e:
        print(f"Connection failed: {e}")
    except KeyboardInterrupt:
        print("Closed by user.")
