# event_listeners.py
# Live subscriptions scoped to the occupied bin.
#
# Each listener is a start()/stop() pair owned by one RecyclingSession. Deliveries hop onto
# the session scheduler, and the first batch after every start() is the existing backlog,
# which is skipped so history is never counted as new.

import logging

from datastore import ADDED, REMOVED, DataStoreError
from models import WASTE_EVENTS, WRONG_CLASSIFICATIONS, WasteEvent, WrongClassification
from util import normalize_waste_type

logger = logging.getLogger(__name__)


class LiveSubscription:
    collection = None

    def __init__(self, store, scheduler, bin_id):
        self.store = store
        self.scheduler = scheduler
        self.bin_id = bin_id
        self.failed = False
        self._handle = None
        self._generation = 0
        self._initial_pending = False

    @property
    def active(self):
        return self._handle is not None

    def criteria(self):
        return {'bin_id': self.bin_id}

    def start(self):
        if self._handle is not None:
            return
        self._generation += 1
        generation = self._generation
        self._initial_pending = True
        self.failed = False
        try:
            self._handle = self.store.subscribe(
                self.collection,
                self.criteria(),
                lambda changes: self.scheduler.submit(self._dispatch, generation, changes),
                lambda error: self.scheduler.submit(self._fail, generation, error),
            )
        except DataStoreError as e:
            self._handle = None
            self._fail(generation, e)
            return
        logger.info("Listening on %s for bin %s", self.collection, self.bin_id)

    def stop(self):
        # Deliveries already queued for this generation are dropped by _dispatch
        self._generation += 1
        if self._handle is None:
            return
        handle, self._handle = self._handle, None
        handle.close()
        logger.info("Stopped listening on %s for bin %s", self.collection, self.bin_id)

    def _dispatch(self, generation, changes):
        if generation != self._generation:
            return
        if self._initial_pending:
            self._initial_pending = False
            logger.debug("Skipping initial %s snapshot of %d documents",
                         self.collection, len(changes))
            return
        for change in changes:
            if change.kind == ADDED:
                self.on_added(change.document)
            elif change.kind == REMOVED:
                self.on_removed(change.document)

    def _fail(self, generation, error):
        if generation != self._generation:
            return
        self.failed = True
        logger.error("Subscription on %s for bin %s failed: %s", self.collection, self.bin_id, error)

    def on_added(self, document):
        raise NotImplementedError

    def on_removed(self, document):
        pass


class WasteEventListener(LiveSubscription):
    """Feeds device-originated waste events to on_device_event; echoes are ignored."""

    collection = WASTE_EVENTS

    def __init__(self, store, scheduler, bin_id, on_device_event):
        super().__init__(store, scheduler, bin_id)
        self.on_device_event = on_device_event

    def on_added(self, document):
        event = WasteEvent.from_document(document)
        if not event.is_device_event:
            logger.debug("Ignoring %s event %s for bin %s", event.origin.value, event.id, self.bin_id)
            return
        logger.info("Device waste event %s (%s) for bin %s", event.id, event.waste_type, self.bin_id)
        self.on_device_event(event)


class CorrectionListener(LiveSubscription):
    """Surfaces unanswered wrong-classification reports for the bin."""

    collection = WRONG_CLASSIFICATIONS

    def __init__(self, store, scheduler, bin_id, on_prompt, on_resolved=None):
        super().__init__(store, scheduler, bin_id)
        self.on_prompt = on_prompt
        self.on_resolved = on_resolved

    def criteria(self):
        return {'bin_id': self.bin_id, 'user_answered': False}

    def on_added(self, document):
        report = WrongClassification.from_document(document)
        logger.info("Wrong classification %s reported for bin %s", report.id, self.bin_id)
        self.on_prompt(report)

    def on_removed(self, document):
        # Answered elsewhere: another client or the auto-resolver
        if self.on_resolved is not None:
            self.on_resolved(document['_id'])

    def answer(self, report, waste_type):
        # Unconditional terminal write; the auto-resolver may write the same record
        self.store.update_one(WRONG_CLASSIFICATIONS, {'_id': report.id}, {'$set': {
            'user_answered': True,
            'user_classified_type': normalize_waste_type(waste_type),
        }})
        logger.info("Wrong classification %s answered as %s", report.id, waste_type)
