"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi.testclient import TestClient

from casino_chat.client.models import ChatUser
from casino_chat.config import AppConfig, TokenGrant
from casino_chat.main import create_app

from fakes import FakeMessageStore, FakePresenceAPI, FakeTransport, ManualClock

ALICE_TOKEN = "tok-alice"
BOB_TOKEN = "tok-bob"
MOD_TOKEN = "tok-mod"


@pytest.fixture
def chat_config() -> AppConfig:
    """Configuration with three known tokens and default tunables."""
    return AppConfig(
        secrets={
            "tokens": {
                ALICE_TOKEN: TokenGrant(user_id="u-alice", username="alice"),
                BOB_TOKEN: TokenGrant(user_id="u-bob", username="bob"),
                MOD_TOKEN: TokenGrant(user_id="u-mod", username="pitboss", is_moderator=True),
            }
        }
    )


@pytest.fixture
def chat_app(chat_config):
    return create_app(chat_config)


@pytest.fixture
def api_client(chat_app):
    """Provide a TestClient for a fresh chat app.

    Entered as a context manager so HTTP calls and WebSocket sessions share
    one event loop, which REST-to-WebSocket broadcast tests rely on.
    """
    with TestClient(chat_app) as client:
        yield client


@pytest.fixture
def alice() -> ChatUser:
    return ChatUser(user_id="u-alice", username="alice")


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def store(clock) -> FakeMessageStore:
    return FakeMessageStore(clock)


@pytest.fixture
def presence_api() -> FakePresenceAPI:
    return FakePresenceAPI()
