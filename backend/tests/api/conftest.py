"""API-specific test fixtures."""

from contextlib import asynccontextmanager, contextmanager

import pytest
from fakeredis import FakeAsyncRedis
from fastapi import FastAPI
from fastapi.testclient import TestClient

from agentrelay.db import close_redis, init_redis
from agentrelay.main import create_app, wire_services


def _test_lifespan(settings, agent, pr_client_factory):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Test lifespan: fakeredis and scripted collaborators, created in TestClient's event loop."""
        app.state.shutting_down = False
        redis = await init_redis(client=FakeAsyncRedis(decode_responses=True))
        wire_services(app, redis, settings, agent=agent, pr_client_factory=pr_client_factory)
        yield
        await app.state.registry.close()
        await close_redis()

    return lifespan


@pytest.fixture
def client_for(settings, fake_agent, pr_clients):
    """Build a TestClient around the real app with settings overrides and an optional agent."""

    @contextmanager
    def build(agent=None, **overrides):
        app = create_app()
        app.router.lifespan_context = _test_lifespan(
            settings.model_copy(update=overrides),
            agent or fake_agent,
            pr_clients,
        )
        with TestClient(app) as client:
            yield client

    return build


@pytest.fixture
def api_client(client_for):
    with client_for() as client:
        yield client
