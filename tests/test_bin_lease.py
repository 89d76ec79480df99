"""
Module: test_bin_lease.py
Purpose: Bin lease acquisition, staleness, heartbeat and release

Coverage:
- Exclusive grant on a live lease, re-entry by the same holder
- Stale takeover (last writer wins)
- Lookup by document id and by bin_id field, missing bins
- Best-effort heartbeat/release
- The unguarded read-then-write race
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from bin_lease import BinLeaseManager, BinNotFoundError
from datastore import DataStoreError
from models import BINS, LeaseResult


@pytest.fixture
def leases(store, scheduler):
    return BinLeaseManager(store, scheduler.now)


def _bin(store, bin_id):
    return store.find_by_key(BINS, bin_id, 'bin_id')


class TestAcquire:
    def test_free_bin_is_granted(self, leases, store, scheduler):
        assert leases.acquire('bin_001', 'user_a') is LeaseResult.GRANTED

        doc = _bin(store, 'bin_001')
        assert doc['active_user'] is True
        assert doc['current_user'] == 'user_a'
        assert doc['last_activity'] == scheduler.now()

    def test_second_actor_sees_occupied(self, leases, store):
        """Two users hitting a never-occupied bin back to back: exactly one lease"""
        results = [leases.acquire('bin_002', 'user_a'), leases.acquire('bin_002', 'user_b')]

        assert results.count(LeaseResult.GRANTED) == 1
        assert results.count(LeaseResult.OCCUPIED) == 1
        assert _bin(store, 'bin_002')['current_user'] == 'user_a'

    def test_holder_can_reacquire(self, leases):
        leases.acquire('bin_001', 'user_a')
        assert leases.acquire('bin_001', 'user_a') is LeaseResult.GRANTED

    def test_lease_at_exactly_sixty_seconds_is_still_live(self, leases, scheduler):
        leases.acquire('bin_001', 'user_a')
        scheduler.advance(60)
        assert leases.acquire('bin_001', 'user_b') is LeaseResult.OCCUPIED

    def test_stale_lease_is_taken_over(self, leases, store, scheduler):
        store.update_one(BINS, {'_id': 'bin_003'}, {'$set': {
            'active_user': True,
            'current_user': 'A',
            'last_activity': scheduler.now() - timedelta(seconds=90),
        }})

        assert leases.acquire('bin_003', 'B') is LeaseResult.GRANTED
        assert _bin(store, 'bin_003')['current_user'] == 'B'

    def test_lease_without_timestamp_is_never_stale(self, leases, store):
        store.update_one(BINS, {'_id': 'bin_003'}, {'$set': {'active_user': True, 'current_user': 'A'},
                                                     '$unset': {'last_activity': ''}})
        assert leases.acquire('bin_003', 'B') is LeaseResult.OCCUPIED

    def test_bin_found_by_bin_id_field(self, leases, store):
        assert leases.acquire('bin_lobby', 'user_a') is LeaseResult.GRANTED
        assert _bin(store, 'bin_lobby')['current_user'] == 'user_a'

    def test_missing_bin_raises(self, leases):
        with pytest.raises(BinNotFoundError, match='bin_999'):
            leases.acquire('bin_999', 'user_a')

    def test_interleaved_acquire_is_a_known_race(self, leases, store):
        """Both reads happen before either write: both sessions believe they hold the bin"""
        snapshot = leases.find_bin('bin_002')
        with patch.object(leases, 'find_bin', return_value=snapshot):
            first = leases.acquire('bin_002', 'user_a')
            second = leases.acquire('bin_002', 'user_b')

        assert first is LeaseResult.GRANTED
        assert second is LeaseResult.GRANTED
        assert _bin(store, 'bin_002')['current_user'] == 'user_b'


class TestHeartbeatAndRelease:
    def test_heartbeat_refreshes_last_activity(self, leases, store, scheduler):
        leases.acquire('bin_001', 'user_a')
        scheduler.advance(45)

        assert leases.heartbeat('bin_001') is True
        assert _bin(store, 'bin_001')['last_activity'] == scheduler.now()

        scheduler.advance(45)
        assert leases.acquire('bin_001', 'user_b') is LeaseResult.OCCUPIED

    def test_release_clears_lease(self, leases, store):
        leases.acquire('bin_001', 'user_a')
        assert leases.release('bin_001') is True

        doc = _bin(store, 'bin_001')
        assert doc['active_user'] is False
        assert doc['current_user'] is None
        assert leases.acquire('bin_001', 'user_b') is LeaseResult.GRANTED

    def test_release_is_idempotent(self, leases, store):
        leases.release('bin_001')
        leases.release('bin_001')
        assert _bin(store, 'bin_001')['active_user'] is False

    def test_release_failure_is_swallowed(self, leases, store):
        with patch.object(store, 'update_one', side_effect=DataStoreError('network down')):
            assert leases.release('bin_001') is False

    def test_release_of_unknown_bin(self, leases):
        assert leases.release('bin_999') is False

    def test_heartbeat_failure_is_swallowed(self, leases, store):
        with patch.object(store, 'find_one', side_effect=DataStoreError('timeout')):
            assert leases.heartbeat('bin_001') is False
