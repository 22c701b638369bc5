import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import json
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import Mock

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from agenda_bot.database import Base
from agenda_bot.models import Service, Tenant

NOW = datetime(2026, 12, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite needs this to honour SAVEPOINT (see SQLAlchemy's SQLite dialect docs).
    @event.listens_for(engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db_session(engine):
    """Real SQLAlchemy session on an in-memory SQLite database."""
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_tenant(db_session):
    def _make(**overrides) -> Tenant:
        values = {
            "id": uuid.uuid4(),
            "name": "Studio Bella",
            "status": "active",
            "address": "Rua das Flores, 10",
            "timezone": "America/Sao_Paulo",
            "bot_enabled": True,
            "instance_id": "studio-bella",
            "gateway_url": "https://gateway.example.com",
            "gateway_api_key": "gw-key",
            "webhook_secret": "hook-secret",
            "templates": {},
        }
        values.update(overrides)
        tenant = Tenant(**values)
        db_session.add(tenant)
        db_session.commit()
        return tenant

    return _make


@pytest.fixture
def make_service(db_session):
    def _make(tenant: Tenant, **overrides) -> Service:
        values = {
            "id": uuid.uuid4(),
            "tenant_id": tenant.id,
            "name": "Corte",
            "price": Decimal("40.00"),
            "capacity": 1,
            "is_full_day": False,
            "active": True,
            "position": 0,
        }
        values.update(overrides)
        service = Service(**values)
        db_session.add(service)
        db_session.commit()
        return service

    return _make


class GatewayStub:
    """Records outbound gateway requests; ``responder`` decides each answer."""

    def __init__(self):
        self.requests = []
        self.responder = lambda request: httpx.Response(201, json={"key": {"id": "OUT-1"}})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    def sent_bodies(self) -> list:
        return [json.loads(r.content) for r in self.requests if "/message/sendText/" in r.url.path]


@pytest.fixture
def gateway():
    return GatewayStub()


@pytest.fixture
def booking_backend():
    return Mock()


@pytest.fixture
def api_client(db_session, gateway, booking_backend):
    from agenda_bot.database import get_db
    from agenda_bot.main import app
    from agenda_bot.routers.webhook import get_booking_backend, get_clock, get_gateway_factory
    from agenda_bot.services.gateway_client import GatewayClient

    def factory(tenant):
        return GatewayClient.from_config(
            tenant.gateway_url,
            tenant.gateway_api_key,
            transport=httpx.MockTransport(gateway.handler),
        )

    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_booking_backend] = lambda: booking_backend
    app.dependency_overrides[get_gateway_factory] = lambda: factory
    app.dependency_overrides[get_clock] = lambda: (lambda: NOW)
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
