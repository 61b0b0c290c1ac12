"""Transaction scope with a stubbed Motor client."""

import pytest
from pymongo.errors import OperationFailure

from app.core.config import get_settings
from app.db import transactions


class FakeSession:
    def __init__(self):
        self.transactions = 0
        self.aborted = 0
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.closed = True
        return False

    async def with_transaction(self, callback):
        self.transactions += 1
        try:
            return await callback(self)
        except Exception:
            self.aborted += 1
            raise


class FakeClient:
    def __init__(self):
        self.session = FakeSession()

    async def start_session(self):
        return self.session


@pytest.fixture
def fake_client(monkeypatch):
    client = FakeClient()
    monkeypatch.setattr(get_settings(), "mongodb_transactions", True)
    monkeypatch.setattr(transactions, "get_client", lambda: client)
    return client


async def test_without_transactions_work_gets_no_session():
    seen = []

    async def work(s):
        seen.append(s)
        return "done"

    assert await transactions.run_in_transaction(work) == "done"
    assert seen == [None]


async def test_work_runs_inside_a_transaction(fake_client):
    async def work(s):
        return s

    assert await transactions.run_in_transaction(work) is fake_client.session
    assert fake_client.session.transactions == 1
    assert fake_client.session.closed


async def test_callers_session_is_reused(fake_client):
    outer = object()

    async def work(s):
        return s

    assert await transactions.run_in_transaction(work, outer) is outer
    assert fake_client.session.transactions == 0


async def test_error_aborts_and_propagates(fake_client):
    async def work(s):
        raise OperationFailure("write conflict")

    with pytest.raises(OperationFailure):
        await transactions.run_in_transaction(work)
    assert fake_client.session.aborted == 1
    assert fake_client.session.closed
