import asyncio
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ADMIN_EMAILS"] = "admin@example.com"

import pytest
from fastapi.testclient import TestClient

from db import create_db_and_tables, get_services, make_engine
from main import app
from services.container import Services
from services.store import SqlStore, StoreError, TransactionConflict

PASSWORD = "secret123"


class FlakyStore(SqlStore):
    """Every transaction conflicts; plain writes can be made to fail too."""

    def __init__(self, engine, fail_writes: bool = False):
        super().__init__(engine)
        self.fail_writes = fail_writes
        self.transactions = 0

    async def transaction(self, path, fn):
        self.transactions += 1
        raise TransactionConflict(path, self.max_retries)

    async def update(self, path, values):
        if self.fail_writes:
            raise StoreError(f"write to {path} refused")
        await super().update(path, values)

    async def set(self, path, value):
        if self.fail_writes:
            raise StoreError(f"write to {path} refused")
        await super().set(path, value)


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'store.db'}", echo=False)
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return SqlStore(engine)


@pytest.fixture
def flaky_store(engine):
    return FlakyStore(engine)


@pytest.fixture
async def services(store):
    services = Services(store)
    await services.start()
    yield services
    await services.stop()


@pytest.fixture
def make_user(store):
    async def make_user(user_id: str, **stats):
        record = {
            "name": user_id.title(),
            "email": f"{user_id}@example.com",
            "role": "member",
            "xp": 0,
            "level": 1,
            "ecoPoints": 0,
            "recyclingCount": 0,
            "donationCount": 0,
            "projectsCompleted": 0,
        }
        record.update(stats)
        await store.set(f"users/{user_id}", record)
        return user_id

    return make_user


@pytest.fixture
def api(store):
    """
    Yields a factory that registers a user and returns (client, user_id).
    Every client keeps its own session cookie.
    """
    services = Services(store)
    asyncio.run(services.start())
    app.dependency_overrides[get_services] = lambda: services

    def login_as(name: str, email: str = None):
        client = TestClient(app)
        email = email or f"{name.lower()}@example.com"
        resp = client.post("/register", json={"email": email, "name": name, "password": PASSWORD})
        assert resp.status_code == 201, resp.text
        return client, resp.json()["id"]

    yield login_as

    app.dependency_overrides.clear()
    asyncio.run(services.stop())
