from datetime import datetime, timedelta, timezone
import copy
import itertools

import pytest
from fastapi.testclient import TestClient
from pydantic import BaseModel

import main

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


class InMemoryStore:
    """Stands in for the database helpers that main.py imports."""

    def __init__(self):
        self.collections = {}
        self._ids = itertools.count(1)
        self._ticks = itertools.count(1)

    def _stamp(self):
        return datetime(2025, 1, 1, tzinfo=timezone.utc) + timedelta(microseconds=next(self._ticks))

    def _out(self, doc_id, doc):
        out = copy.deepcopy(doc)
        out["id"] = doc_id
        return out

    def create_document(self, collection_name, data, doc_id=None):
        data_dict = data.model_dump() if isinstance(data, BaseModel) else dict(data)
        stamp = self._stamp()
        data_dict["created_at"] = stamp
        data_dict["updated_at"] = stamp
        doc_id = doc_id or f"{collection_name}-{next(self._ids)}"
        self.collections.setdefault(collection_name, {})[doc_id] = copy.deepcopy(data_dict)
        return doc_id

    def get_documents(self, collection_name):
        return [self._out(k, v) for k, v in self.collections.get(collection_name, {}).items()]

    def get_document_by_id(self, collection_name, id_val):
        doc = self.collections.get(collection_name, {}).get(id_val)
        return self._out(id_val, doc) if doc is not None else None

    def update_document(self, collection_name, id_val, update_dict):
        doc = self.collections.get(collection_name, {}).get(id_val)
        if doc is None:
            return None
        doc.update(copy.deepcopy(update_dict))
        doc["updated_at"] = self._stamp()
        return self._out(id_val, doc)

    def update_document_where(self, collection_name, id_val, conditions, update_dict):
        doc = self.collections.get(collection_name, {}).get(id_val)
        if doc is None:
            return None
        # None matches a missing field, as in a Mongo filter
        if any(doc.get(k) != v for k, v in conditions.items()):
            return None
        return self.update_document(collection_name, id_val, update_dict)

    def increment_xp(self, collection_name, id_val, xp_delta, xp_per_coin):
        doc = self.collections.get(collection_name, {}).get(id_val)
        if doc is None:
            return None
        doc["total_xp"] = doc.get("total_xp", 0) + xp_delta
        doc["weekly_xp"] = doc.get("weekly_xp", 0) + xp_delta
        doc["star_coins"] = doc["total_xp"] // xp_per_coin
        doc["updated_at"] = self._stamp()
        return self._out(id_val, doc)


@pytest.fixture
def store(monkeypatch):
    fake = InMemoryStore()
    for name in (
        "create_document",
        "get_documents",
        "get_document_by_id",
        "update_document",
        "update_document_where",
        "increment_xp",
    ):
        monkeypatch.setattr(main, name, getattr(fake, name))
    monkeypatch.setattr(main, "_now", lambda: NOW)
    return fake


@pytest.fixture
def client(store):
    return TestClient(main.app)


@pytest.fixture
def make_player(client, store):
    """Create a player through the API, then patch stored fields directly."""
    def _make(user_id, display_name=None, **fields):
        resp = client.post("/players", json={"user_id": user_id, "display_name": display_name or user_id.title()})
        assert resp.status_code == 200
        if fields:
            store.collections["player"][user_id].update(fields)
        return store.get_document_by_id("player", user_id)
    return _make
