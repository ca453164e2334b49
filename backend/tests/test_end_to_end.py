"""End-to-end: ChatSession over real HTTP and WebSocket against a live server."""
import asyncio
import socket

import pytest
import uvicorn

from casino_chat.client.errors import AuthExpiredError
from casino_chat.client.models import ChatUser, ConnectionStatus, MessageState
from casino_chat.client.session import ChatSession
from casino_chat.config import ClientSettings, ReconnectSettings
from casino_chat.main import create_app

from fakes import eventually


def _free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def settings():
    return ClientSettings(reconnect=ReconnectSettings(base_delay=0.05, max_attempts=2, jitter=0.0))


class LiveServer:
    def __init__(self, app):
        self.port = _free_port()
        self.url = f"http://127.0.0.1:{self.port}"
        self.server = uvicorn.Server(
            uvicorn.Config(app, host="127.0.0.1", port=self.port, log_level="warning")
        )
        self._task = None

    async def __aenter__(self):
        self._task = asyncio.create_task(self.server.serve())
        await eventually(lambda: self.server.started, timeout=5)
        return self

    async def __aexit__(self, *exc_info):
        self.server.should_exit = True
        await asyncio.wait_for(self._task, 5)


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_two_sessions_exchange_messages(self, chat_app, settings):
        alice = ChatUser("u-alice", "alice")
        bob = ChatUser("u-bob", "bob")

        async with LiveServer(chat_app) as live:
            async with ChatSession.over_http(alice, live.url, "tok-alice", settings) as a, \
                    ChatSession.over_http(bob, live.url, "tok-bob", settings) as b:
                await a.connection.wait_for(ConnectionStatus.CONNECTED, timeout=5)
                await b.connection.wait_for(ConnectionStatus.CONNECTED, timeout=5)

                sent = await a.send("gl hf")
                await eventually(lambda: [m.content for m in b.messages] == ["gl hf"], timeout=5)

                assert sent.state is MessageState.CONFIRMED
                assert [m.id for m in a.messages] == [sent.id]
                assert b.messages[0].id == sent.id
                await eventually(lambda: a.presence.is_online("u-bob"), timeout=5)

                await a.delete_message(sent.id)
                await eventually(lambda: b.messages == [], timeout=5)

    @pytest.mark.asyncio
    async def test_rejected_token_ends_disconnected(self, chat_app, settings):
        mallory = ChatUser("u-mallory", "mallory")

        async with LiveServer(chat_app) as live:
            async with ChatSession.over_http(mallory, live.url, "tok-forged", settings) as session:
                state = await session.connection.wait_for(ConnectionStatus.DISCONNECTED, timeout=5)
                assert isinstance(state.last_error, AuthExpiredError)
