"""Shared fixtures."""

import pytest
from httpx import ASGITransport, AsyncClient

from exam_timer.config import Settings
from exam_timer.controller import SessionController
from exam_timer.registry import SessionRegistry
from exam_timer.router import CommandRouter
from exam_timer.server import create_app

from .fakes import ManualScheduler, RecordingBroadcaster, StaticAuthenticator


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def controller(registry, broadcaster, scheduler):
    return SessionController(registry, broadcaster, scheduler, timezone="UTC")


@pytest.fixture
def authenticator():
    return StaticAuthenticator()


@pytest.fixture
def command_router(controller, broadcaster, authenticator):
    return CommandRouter(controller, broadcaster, authenticator)


@pytest.fixture
def settings():
    return Settings(server_timezone="UTC", tick_seconds=1.0)


@pytest.fixture
def app(settings, scheduler, authenticator):
    return create_app(settings, scheduler=scheduler, authenticator=authenticator)


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
