# auto_resolver.py
# Background task that closes wrong-classification reports nobody can answer: when a report
# arrives for a bin without an active user, it is resolved as "other".

import logging

from datastore import ADDED, DataStoreError
from models import BINS, WRONG_CLASSIFICATIONS, Bin, WrongClassification

logger = logging.getLogger(__name__)

AUTO_RESOLVED_TYPE = 'other'


class WrongClassificationAutoResolver:
    def __init__(self, store, scheduler):
        self.store = store
        self.scheduler = scheduler
        self._subscription = None
        self._generation = 0

    @property
    def running(self):
        return self._subscription is not None

    def start(self):
        if self._subscription is not None:
            logger.warning("WrongClassificationAutoResolver already running")
            return
        self._generation += 1
        generation = self._generation
        # Unlike a session listener, the backlog is handled too: old orphans get resolved
        self._subscription = self.store.subscribe(
            WRONG_CLASSIFICATIONS,
            {'user_answered': False},
            lambda changes: self.scheduler.submit(self._on_changes, generation, changes),
            lambda error: logger.error("Auto-resolver subscription failed: %s", error),
        )
        logger.info("WrongClassificationAutoResolver started")

    def stop(self):
        self._generation += 1
        if self._subscription is None:
            return
        subscription, self._subscription = self._subscription, None
        subscription.close()
        logger.info("WrongClassificationAutoResolver stopped")

    def _on_changes(self, generation, changes):
        if generation != self._generation:
            return
        for change in changes:
            if change.kind == ADDED:
                self.handle(WrongClassification.from_document(change.document))

    def handle(self, report):
        """Resolve report unless its bin has an active user. Returns True when resolved."""
        if not report.bin_id:
            logger.info("Wrong classification %s has no bin_id, skipping auto-resolution", report.id)
            return False
        try:
            doc = self.store.find_by_key(BINS, report.bin_id, 'bin_id')
            if doc is None:
                logger.info("Bin %s not found, skipping auto-resolution", report.bin_id)
                return False
            if Bin.from_document(doc).active_user:
                logger.info("Wrong classification for bin %s has active user, leaving for manual resolution",
                            report.bin_id)
                return False
            self.store.update_one(WRONG_CLASSIFICATIONS, {'_id': report.id}, {'$set': {
                'user_answered': True,
                'user_classified_type': AUTO_RESOLVED_TYPE,
                'auto_resolved': True,
                'auto_resolved_at': self.scheduler.now(),
            }})
        except DataStoreError as e:
            logger.error("Error auto-resolving wrong classification %s: %s", report.id, e)
            return False
        logger.info("Auto-resolved wrong classification %s with type %r", report.id, AUTO_RESOLVED_TYPE)
        return True
