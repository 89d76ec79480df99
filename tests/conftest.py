"""
Shared pytest fixtures for the recycling session tests.

Provides:
- ManualScheduler: the dispatch scheduler with a clock that only moves when told to
- Seeded in-memory datastore (bins and users)
- Flask test client wired to both
"""

import heapq
import os
from concurrent.futures import Future
from datetime import datetime, timedelta, timezone

import pytest

# Must be set before application/settings are imported anywhere
os.environ["RECYCLE_DATASTORE"] = "memory"
os.environ["AUTO_RESOLVER_ENABLED"] = "false"

from datastore import MemoryDataStore  # noqa: E402
from models import BINS, USERS  # noqa: E402
from scheduler import Scheduler  # noqa: E402

START = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class ManualScheduler(Scheduler):
    """Runs queued callbacks inline, FIFO and never nested; timers fire on advance()."""

    def __init__(self, start=START):
        super().__init__('manual')
        self.clock = start
        self._draining = False

    def now(self):
        return self.clock

    def start(self):
        pass

    def stop(self, timeout=5):
        pass

    def submit(self, fn, *args):
        future = Future()
        self._ready.append((future, fn, args))
        self.run_pending()
        return future

    def call(self, fn, *args, timeout=None):
        return self.submit(fn, *args).result(0)

    def run_pending(self):
        if self._draining:
            return
        self._draining = True
        try:
            while self._ready:
                future, fn, args = self._ready.popleft()
                self._invoke(future, fn, args)
        finally:
            self._draining = False

    def advance(self, seconds):
        target = self.clock + timedelta(seconds=seconds)
        while True:
            self._drop_cancelled()
            if not self._timers or self._timers[0][0] > target.timestamp():
                break
            deadline, _, handle = heapq.heappop(self._timers)
            self.clock = datetime.fromtimestamp(deadline, timezone.utc)
            self._draining = True
            try:
                self._fire(handle)
            finally:
                self._draining = False
            self.run_pending()
        self.clock = target

    def pending_timers(self):
        self._drop_cancelled()
        return [entry[2] for entry in self._timers if not entry[2].cancelled]


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def store(scheduler):
    store = MemoryDataStore()
    for bin_id in ('bin_001', 'bin_002', 'bin_003', 'bin_004'):
        store.insert_one(BINS, {
            '_id': bin_id,
            'bin_id': bin_id,
            'active_user': False,
            'current_user': None,
            'last_activity': scheduler.now() - timedelta(hours=1),
            'status': 'active',
            'location': 'Karnaf',
            'capacity': 100,
        })
    # Provisioned under a random document id, reachable only through its bin_id field
    store.insert_one(BINS, {'bin_id': 'bin_lobby', 'active_user': False, 'current_user': None})
    store.insert_one(USERS, {
        '_id': 'user_a', 'role': 'user', 'total_points': 10,
        'recycle_stats': {'plastic': 1, 'glass': 0, 'metal': 0, 'other': 0},
    })
    store.insert_one(USERS, {'_id': 'user_b', 'role': 'user', 'total_points': 0, 'recycle_stats': {}})
    store.insert_one(USERS, {'_id': 'guest_1', 'role': 'guest', 'total_points': 0, 'recycle_stats': {}})
    store.insert_one(USERS, {'_id': 'admin_1', 'role': 'admin', 'total_points': 0, 'recycle_stats': {}})
    store.insert_one(USERS, {'auth_uid': 'uid_c', 'role': 'user', 'total_points': 5, 'recycle_stats': {}})
    return store


@pytest.fixture
def app(store, scheduler):
    from application import create_app, shutdown_app
    from settings import TestConfig

    app = create_app(TestConfig, store=store, scheduler=scheduler)
    yield app
    shutdown_app(app)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login(client):
    """Sign the test client in as user_id (auth itself lives outside this service)."""
    def _login(user_id):
        with client.session_transaction() as sess:
            sess['user_id'] = user_id
    return _login
