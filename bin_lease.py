# bin_lease.py
# Exclusive occupancy of a physical bin, held through the lease fields on its record:
#   active_user, current_user, last_activity
#
# There is no transaction around acquire(): two sessions that both read "free" before
# either writes will both be granted. The last writer owns current_user.

import logging

from datastore import DataStoreError
from models import BINS, Bin, LeaseResult

logger = logging.getLogger(__name__)

STALE_LEASE_SECONDS = 60


class BinNotFoundError(LookupError):
    def __init__(self, bin_id):
        super().__init__(f"Bin not found: {bin_id}")
        self.bin_id = bin_id


class BinLeaseManager:
    def __init__(self, store, clock, stale_after=STALE_LEASE_SECONDS):
        self.store = store
        self.clock = clock  # callable returning an aware UTC datetime
        self.stale_after = stale_after

    def find_bin(self, bin_id):
        """Resolve a bin by document id, then by its bin_id field. None if absent."""
        doc = self.store.find_by_key(BINS, bin_id, 'bin_id')
        return Bin.from_document(doc) if doc is not None else None

    def is_stale(self, record, now=None):
        age = record.lease_age(now or self.clock())
        return age is not None and age > self.stale_after

    def acquire(self, bin_id, actor_id):
        record = self.find_bin(bin_id)
        if record is None:
            raise BinNotFoundError(bin_id)

        now = self.clock()
        held_by_other = record.active_user and record.current_user != actor_id
        stale = self.is_stale(record, now)
        if held_by_other and not stale:
            logger.info("Bin %s is occupied by %s", bin_id, record.current_user)
            return LeaseResult.OCCUPIED
        if held_by_other:
            logger.info("Bin %s lease held by %s is stale (%.0fs), taking over",
                        bin_id, record.current_user, record.lease_age(now))

        self.store.update_one(BINS, {'_id': record.key}, {'$set': {
            'active_user': True,
            'current_user': actor_id,
            'last_activity': now,
        }})
        logger.info("Bin %s leased to %s", bin_id, actor_id)
        return LeaseResult.GRANTED

    def heartbeat(self, bin_id):
        """Refresh last_activity so concurrent checkers keep seeing a live lease."""
        try:
            record = self.find_bin(bin_id)
            if record is None:
                logger.warning("Bin %s vanished, skipping heartbeat", bin_id)
                return False
            self.store.update_one(BINS, {'_id': record.key},
                                  {'$set': {'last_activity': self.clock()}})
            logger.debug("Bin %s activity updated", bin_id)
            return True
        except DataStoreError as e:
            logger.error("Error updating bin activity for %s: %s", bin_id, e)
            return False

    def release(self, bin_id):
        """Best effort: failures are logged only, a stale lease frees itself."""
        try:
            record = self.find_bin(bin_id)
            if record is None:
                logger.error("Bin %s not found for release", bin_id)
                return False
            self.store.update_one(BINS, {'_id': record.key}, {'$set': {
                'active_user': False,
                'current_user': None,
                'last_activity': self.clock(),
            }})
            logger.info("Bin %s released", bin_id)
            return True
        except DataStoreError as e:
            logger.error("Error releasing bin %s: %s", bin_id, e)
            return False
