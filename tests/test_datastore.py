"""
Module: test_datastore.py
Purpose: Datastore backends and the live-subscription contract

Coverage:
- Memory backend CRUD, update operators, key fallback
- Subscription change kinds (added / modified / removed)
- MongoDB backend error translation and change-stream replay (mocked client)
"""

from unittest.mock import MagicMock

import pytest
from bson.objectid import ObjectId
from pymongo.errors import PyMongoError, ServerSelectionTimeoutError

from datastore import (ADDED, MODIFIED, REMOVED, DataStoreError, MemoryDataStore, MongoDataStore,
                       _ChangeStreamSubscription, create_datastore, key_candidates, matches)


class TestMemoryDataStore:
    def test_insert_assigns_object_id(self):
        store = MemoryDataStore()
        doc_id = store.insert_one('things', {'name': 'a'})
        assert isinstance(doc_id, ObjectId)
        assert store.find_one('things', {'_id': doc_id})['name'] == 'a'

    def test_duplicate_id_rejected(self):
        store = MemoryDataStore()
        store.insert_one('things', {'_id': 'a'})
        with pytest.raises(DataStoreError):
            store.insert_one('things', {'_id': 'a'})

    def test_returned_documents_are_copies(self):
        store = MemoryDataStore()
        store.insert_one('things', {'_id': 'a', 'nested': {'n': 1}})
        doc = store.find_one('things', {'_id': 'a'})
        doc['nested']['n'] = 99
        assert store.find_one('things', {'_id': 'a'})['nested']['n'] == 1

    def test_update_operators(self):
        store = MemoryDataStore()
        store.insert_one('users', {'_id': 'u', 'total_points': 3, 'old': True})
        assert store.update_one('users', {'_id': 'u'}, {
            '$inc': {'total_points': 2, 'recycle_stats.glass': 1},
            '$set': {'role': 'user'},
            '$unset': {'old': ''},
        }) is True
        assert store.find_one('users', {'_id': 'u'}) == {
            '_id': 'u', 'total_points': 5, 'recycle_stats': {'glass': 1}, 'role': 'user'}
        assert store.update_one('users', {'_id': 'missing'}, {'$set': {'x': 1}}) is False

    def test_unsupported_operator(self):
        store = MemoryDataStore()
        store.insert_one('users', {'_id': 'u'})
        with pytest.raises(DataStoreError):
            store.update_one('users', {'_id': 'u'}, {'$push': {'x': 1}})

    def test_find_by_key_falls_back_to_field(self):
        store = MemoryDataStore()
        oid = store.insert_one('users', {'auth_uid': 'firebase-uid'})
        assert store.find_by_key('users', str(oid), 'auth_uid')['_id'] == oid
        assert store.find_by_key('users', 'firebase-uid', 'auth_uid')['_id'] == oid
        assert store.find_by_key('users', 'nobody', 'auth_uid') is None

    def test_subscription_change_kinds(self):
        store = MemoryDataStore()
        store.insert_one('reports', {'_id': 'old', 'bin_id': 'b', 'user_answered': False})
        batches = []
        sub = store.subscribe('reports', {'bin_id': 'b', 'user_answered': False}, batches.append)

        store.insert_one('reports', {'_id': 'new', 'bin_id': 'b', 'user_answered': False})
        store.update_one('reports', {'_id': 'new'}, {'$set': {'confidence': 0.4}})
        store.update_one('reports', {'_id': 'new'}, {'$set': {'user_answered': True}})
        store.insert_one('reports', {'_id': 'other', 'bin_id': 'c', 'user_answered': False})

        assert [c.document['_id'] for c in batches[0]] == ['old']
        assert [(c.kind, c.document['_id']) for batch in batches[1:] for c in batch] == [
            (ADDED, 'new'), (MODIFIED, 'new'), (REMOVED, 'new')]

        sub.close()
        store.insert_one('reports', {'_id': 'late', 'bin_id': 'b', 'user_answered': False})
        assert len(batches) == 4
        assert store.subscriber_count() == 0


def test_matches_and_key_candidates():
    assert matches({'a': {'b': 1}, 'c': 2}, {'a.b': 1, 'c': 2})
    assert not matches({'a': 1}, {'b': None, 'a': 2})
    oid = ObjectId()
    assert key_candidates(str(oid)) == [str(oid), oid]
    assert key_candidates('bin_001') == ['bin_001']


def test_create_datastore_memory():
    assert isinstance(create_datastore({'DATASTORE': 'memory'}), MemoryDataStore)


class TestMongoDataStore:
    def test_connection_failure_is_translated(self):
        client = MagicMock()
        client.server_info.side_effect = ServerSelectionTimeoutError('no servers')
        with pytest.raises(DataStoreError, match='Cannot connect'):
            MongoDataStore('mongodb://nowhere', 'eco_rewards', client=client)

    def test_operations_delegate_and_translate_errors(self):
        client = MagicMock()
        collection = client.__getitem__.return_value.__getitem__.return_value
        collection.find_one.return_value = {'_id': 'bin_001'}
        collection.update_one.return_value.matched_count = 1
        store = MongoDataStore('mongodb://localhost', 'eco_rewards', client=client)

        assert store.find_one('bins', {'_id': 'bin_001'}) == {'_id': 'bin_001'}
        assert store.update_one('bins', {'_id': 'bin_001'}, {'$set': {'active_user': True}}) is True

        collection.insert_one.side_effect = PyMongoError('not primary')
        with pytest.raises(DataStoreError, match='insert into waste_events'):
            store.insert_one('waste_events', {'bin_id': 'bin_001'})


class TestChangeStreamReplay:
    @pytest.fixture
    def subscription(self):
        # Built without its watcher thread; only the translation is under test
        sub = _ChangeStreamSubscription.__new__(_ChangeStreamSubscription)
        sub._criteria = {'bin_id': 'b', 'user_answered': False}
        sub._known = {'seen'}
        return sub

    @staticmethod
    def _event(op, doc_id, doc=None):
        return {'operationType': op, 'documentKey': {'_id': doc_id}, 'fullDocument': doc}

    def test_insert_of_new_matching_document(self, subscription):
        change = subscription._translate(self._event('insert', 'n', {'_id': 'n', 'bin_id': 'b',
                                                                      'user_answered': False}))
        assert change.kind == ADDED
        assert 'n' in subscription._known

    def test_insert_already_in_initial_batch_is_skipped(self, subscription):
        doc = {'_id': 'seen', 'bin_id': 'b', 'user_answered': False}
        assert subscription._translate(self._event('insert', 'seen', doc)) is None

    def test_update_leaving_the_filter_is_removed(self, subscription):
        doc = {'_id': 'seen', 'bin_id': 'b', 'user_answered': True}
        assert subscription._translate(self._event('update', 'seen', doc)).kind == REMOVED
        assert 'seen' not in subscription._known

    def test_non_matching_documents_are_ignored(self, subscription):
        doc = {'_id': 'x', 'bin_id': 'other', 'user_answered': False}
        assert subscription._translate(self._event('insert', 'x', doc)) is None
        assert subscription._translate(self._event('delete', 'x')) is None

    def test_delete_of_known_document(self, subscription):
        assert subscription._translate(self._event('delete', 'seen')).kind == REMOVED
