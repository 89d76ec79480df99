# datastore.py
# Document store used by the session core. Two backends share one interface:
#   MongoDataStore  - pymongo, live subscriptions on top of change streams
#   MemoryDataStore - in-process documents, for local runs and tests
#
# A subscription delivers an initial batch with every matching document (possibly empty),
# then incremental batches of Change(kind, document) with kind in added/modified/removed.

import copy
import logging
import threading
from collections import namedtuple
from contextlib import contextmanager

from bson.objectid import ObjectId
from pymongo import MongoClient
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)

ADDED = 'added'
MODIFIED = 'modified'
REMOVED = 'removed'

Change = namedtuple('Change', ['kind', 'document'])


class DataStoreError(Exception):
    """Raised when the backing database rejects or fails an operation."""


def _get_path(doc, path):
    value = doc
    for part in path.split('.'):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def matches(doc, criteria):
    """Equality-only filter, the only kind the session core issues."""
    return all(_get_path(doc, key) == expected for key, expected in criteria.items())


def key_candidates(key):
    """Primary key forms to try for an id that arrived as a string."""
    candidates = [key]
    if isinstance(key, str) and ObjectId.is_valid(key):
        candidates.append(ObjectId(key))
    return candidates


class Subscription:
    def close(self):
        raise NotImplementedError


class DataStore:
    def find_one(self, collection, criteria):
        raise NotImplementedError

    def find(self, collection, criteria):
        raise NotImplementedError

    def insert_one(self, collection, document):
        raise NotImplementedError

    def update_one(self, collection, criteria, update):
        """Apply a $set/$inc/$unset update; returns True when a document matched."""
        raise NotImplementedError

    def subscribe(self, collection, criteria, on_change, on_error=None):
        raise NotImplementedError

    def close(self):
        pass

    def find_by_key(self, collection, key, field):
        """Look a document up by primary key, falling back to a secondary identifying field."""
        for candidate in key_candidates(key):
            doc = self.find_one(collection, {'_id': candidate})
            if doc is not None:
                return doc
        return self.find_one(collection, {field: key})


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------

class _MemorySubscription(Subscription):
    def __init__(self, store, collection, criteria, on_change, on_error):
        self.store = store
        self.collection = collection
        self.criteria = dict(criteria)
        self.on_change = on_change
        self.on_error = on_error
        self.closed = False

    def close(self):
        if not self.closed:
            self.closed = True
            self.store._unsubscribe(self)


class MemoryDataStore(DataStore):
    def __init__(self):
        self._collections = {}
        self._subscriptions = []
        self._lock = threading.RLock()

    def _docs(self, collection):
        return self._collections.setdefault(collection, {})

    def find_one(self, collection, criteria):
        with self._lock:
            for doc in self._docs(collection).values():
                if matches(doc, criteria):
                    return copy.deepcopy(doc)
        return None

    def find(self, collection, criteria):
        with self._lock:
            return [copy.deepcopy(doc) for doc in self._docs(collection).values()
                    if matches(doc, criteria)]

    def insert_one(self, collection, document):
        doc = copy.deepcopy(document)
        doc.setdefault('_id', ObjectId())
        with self._lock:
            docs = self._docs(collection)
            if doc['_id'] in docs:
                raise DataStoreError(f"Duplicate key {doc['_id']!r} in {collection}")
            docs[doc['_id']] = doc
            deliveries = self._changes_for(collection, None, doc)
        self._deliver(deliveries)
        return doc['_id']

    def update_one(self, collection, criteria, update):
        with self._lock:
            target = None
            for doc in self._docs(collection).values():
                if matches(doc, criteria):
                    target = doc
                    break
            if target is None:
                return False
            before = copy.deepcopy(target)
            _apply_update(target, update)
            deliveries = self._changes_for(collection, before, target)
        self._deliver(deliveries)
        return True

    def subscribe(self, collection, criteria, on_change, on_error=None):
        subscription = _MemorySubscription(self, collection, criteria, on_change, on_error)
        with self._lock:
            initial = [Change(ADDED, copy.deepcopy(doc)) for doc in self._docs(collection).values()
                       if matches(doc, criteria)]
            self._subscriptions.append(subscription)
        on_change(initial)
        return subscription

    def _unsubscribe(self, subscription):
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def subscriber_count(self, collection=None):
        with self._lock:
            return sum(1 for sub in self._subscriptions
                       if collection is None or sub.collection == collection)

    def _changes_for(self, collection, before, after):
        deliveries = []
        for sub in self._subscriptions:
            if sub.collection != collection:
                continue
            was = before is not None and matches(before, sub.criteria)
            now = matches(after, sub.criteria)
            if now and not was:
                kind = ADDED
            elif now and was:
                kind = MODIFIED
            elif was:
                kind = REMOVED
            else:
                continue
            deliveries.append((sub, Change(kind, copy.deepcopy(after))))
        return deliveries

    def _deliver(self, deliveries):
        for sub, change in deliveries:
            if not sub.closed:
                sub.on_change([change])


def _apply_update(doc, update):
    for operator, fields in update.items():
        for path, value in fields.items():
            parent = doc
            parts = path.split('.')
            for part in parts[:-1]:
                parent = parent.setdefault(part, {})
            leaf = parts[-1]
            if operator == '$set':
                parent[leaf] = copy.deepcopy(value)
            elif operator == '$inc':
                parent[leaf] = parent.get(leaf, 0) + value
            elif operator == '$unset':
                parent.pop(leaf, None)
            else:
                raise DataStoreError(f"Unsupported update operator {operator}")


# ---------------------------------------------------------------------------
# MongoDB backend
# ---------------------------------------------------------------------------

@contextmanager
def _translate_errors(action):
    try:
        yield
    except PyMongoError as e:
        raise DataStoreError(f"{action} failed: {e}") from e


class _ChangeStreamSubscription(Subscription):
    """Initial find() then a change stream, replayed as Firestore-style changes.

    Change streams need a replica set (a single-node one is enough).
    """

    _WATCHED_OPERATIONS = ['insert', 'update', 'replace', 'delete']

    def __init__(self, collection, criteria, on_change, on_error):
        self._collection = collection
        self._criteria = dict(criteria)
        self._on_change = on_change
        self._on_error = on_error
        self._known = set()
        self._stopped = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name=f"watch-{collection.name}", daemon=True)
        self._thread.start()

    def close(self):
        self._stopped.set()

    def _run(self):
        pipeline = [{'$match': {'operationType': {'$in': self._WATCHED_OPERATIONS}}}]
        try:
            # Open the stream before the initial read so nothing slips between the two
            with self._collection.watch(pipeline, full_document='updateLookup',
                                        max_await_time_ms=500) as stream:
                initial = list(self._collection.find(self._criteria))
                self._known = {doc['_id'] for doc in initial}
                if self._stopped.is_set():
                    return
                self._on_change([Change(ADDED, doc) for doc in initial])
                while not self._stopped.is_set() and stream.alive:
                    event = stream.try_next()
                    if event is None:
                        continue
                    change = self._translate(event)
                    if change is not None and not self._stopped.is_set():
                        self._on_change([change])
        except PyMongoError as e:
            if self._stopped.is_set():
                return
            logger.error("Change stream on %s failed: %s", self._collection.name, e)
            if self._on_error is not None:
                self._on_error(DataStoreError(str(e)))

    def _translate(self, event):
        doc_id = event['documentKey']['_id']
        doc = event.get('fullDocument')
        if event['operationType'] == 'delete' or doc is None:
            if doc_id in self._known:
                self._known.discard(doc_id)
                return Change(REMOVED, {'_id': doc_id})
            return None
        was = doc_id in self._known
        now = matches(doc, self._criteria)
        if now and not was:
            self._known.add(doc_id)
            return Change(ADDED, doc)
        if now and was:
            if event['operationType'] == 'insert':
                # already delivered with the initial batch
                return None
            return Change(MODIFIED, doc)
        if was:
            self._known.discard(doc_id)
            return Change(REMOVED, doc)
        return None


class MongoDataStore(DataStore):
    def __init__(self, uri, db_name, client=None):
        try:
            self._client = client or MongoClient(uri, serverSelectionTimeoutMS=5000, tz_aware=True)
            # Test the connection
            self._client.server_info()
        except PyMongoError as e:
            logger.error("Error connecting to MongoDB: %s", e)
            raise DataStoreError(f"Cannot connect to MongoDB: {e}") from e
        self._db = self._client[db_name]
        logger.info("Successfully connected to MongoDB database %s", db_name)

    def find_one(self, collection, criteria):
        with _translate_errors(f"find_one on {collection}"):
            return self._db[collection].find_one(criteria)

    def find(self, collection, criteria):
        with _translate_errors(f"find on {collection}"):
            return list(self._db[collection].find(criteria))

    def insert_one(self, collection, document):
        with _translate_errors(f"insert into {collection}"):
            return self._db[collection].insert_one(dict(document)).inserted_id

    def update_one(self, collection, criteria, update):
        with _translate_errors(f"update on {collection}"):
            return self._db[collection].update_one(criteria, update).matched_count > 0

    def subscribe(self, collection, criteria, on_change, on_error=None):
        return _ChangeStreamSubscription(self._db[collection], criteria, on_change, on_error)

    def close(self):
        self._client.close()


def create_datastore(config):
    if config.get('DATASTORE') == 'memory':
        logger.info("Using in-memory datastore")
        return MemoryDataStore()
    return MongoDataStore(config['MONGO_URI'], config['MONGO_DB_NAME'])
