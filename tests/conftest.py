from datetime import datetime, timezone

import pytest

from groupcast.db import connect_db, init_db
from groupcast.models import Group, ProviderError

NOW = datetime(2025, 11, 6, 9, 0, 0, tzinfo=timezone.utc)


class FakeProvider:
    """Records every send; recipients listed in `failing` raise ProviderError."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []

    def send(self, instance, recipient_id, message, mention_everyone=False):
        self.calls.append((instance, recipient_id, message, mention_everyone))
        if recipient_id in self.failing:
            raise ProviderError(f"API Error 500: {recipient_id} unreachable", 500)

    @property
    def recipients(self):
        return [c[1] for c in self.calls]


class FakeDirectory:
    def __init__(self, groups=(), error=None):
        self.groups = list(groups)
        self.error = error
        self.lookups = 0

    def list_groups(self, instance):
        self.lookups += 1
        if self.error:
            raise self.error
        return list(self.groups)


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "groupcast.db")
    init_db(path)
    return path


@pytest.fixture
def conn(db_path):
    c = connect_db(db_path)
    yield c
    c.close()


@pytest.fixture
def groups():
    return [Group("G1", "Alpha Team", 5), Group("G2", "Beta Team", 9)]
