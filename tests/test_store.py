"""MemoryStore filter and upsert semantics."""

from datetime import datetime, timezone

import pytest

from ppcpal.config import Config
from ppcpal.exceptions import ConfigurationError, StoreError
from ppcpal.store import MemoryStore, chunked, create_store


def _seed():
  return MemoryStore({'keywords': [
    {'id': 'a', 'profile_id': '1', 'clicks': 5, 'status': 'enabled'},
    {'id': 'b', 'profile_id': '1', 'clicks': 15, 'status': 'paused'},
    {'id': 'c', 'profile_id': '2', 'clicks': 25, 'status': None},
  ]})


def test_filter_operators():
  store = _seed()
  assert [r['id'] for r in store.select('keywords', {'profile_id': '1'})] == ['a', 'b']
  assert [r['id'] for r in store.select('keywords', {'clicks__gt': 5})] == ['b', 'c']
  assert [r['id'] for r in store.select('keywords', {'clicks__lte': 15})] == ['a', 'b']
  assert [r['id'] for r in store.select('keywords', {'id__in': ['a', 'c']})] == ['a', 'c']
  assert [r['id'] for r in store.select('keywords', {'status__is': None})] == ['c']
  assert [r['id'] for r in store.select('keywords', {'status__neq': 'paused'})] == ['a', 'c']


def test_unknown_operator():
  with pytest.raises(StoreError):
    _seed().select('keywords', {'clicks__between': 1})


def test_order_and_limit():
  rows = _seed().select('keywords', order_by='clicks', desc=True, limit=2)
  assert [r['id'] for r in rows] == ['c', 'b']


def test_upsert_updates_on_natural_key():
  store = MemoryStore()
  first = store.upsert('campaigns', {'connection_id': 'c1', 'amazon_campaign_id': '9', 'name': 'A'},
                       on_conflict='connection_id,amazon_campaign_id')
  second = store.upsert('campaigns', {'connection_id': 'c1', 'amazon_campaign_id': '9', 'name': 'B'},
                        on_conflict='connection_id,amazon_campaign_id')
  assert first[0]['id'] == second[0]['id']
  assert store.count('campaigns') == 1
  assert store.get('campaigns', {'amazon_campaign_id': '9'})['name'] == 'B'


def test_upsert_ignore_duplicates_returns_only_new_rows():
  store = MemoryStore()
  store.upsert('action_queue', {'idempotency_key': 'k1', 'status': 'queued'}, on_conflict='idempotency_key')
  written = store.upsert('action_queue', [
    {'idempotency_key': 'k1', 'status': 'suggested'},
    {'idempotency_key': 'k2', 'status': 'queued'},
  ], on_conflict='idempotency_key', ignore_duplicates=True)
  assert [r['idempotency_key'] for r in written] == ['k2']
  assert store.get('action_queue', {'idempotency_key': 'k1'})['status'] == 'queued'


def test_datetimes_are_stored_as_iso_strings():
  store = MemoryStore()
  row = store.insert('sync_jobs', {'started_at': datetime(2026, 1, 2, 3, 4, tzinfo=timezone.utc)})[0]
  assert row['started_at'] == '2026-01-02T03:04:00+00:00'
  assert row['id'] and row['created_at']


def test_update_and_count():
  store = _seed()
  updated = store.update('keywords', {'status': 'archived'}, {'profile_id': '1'})
  assert len(updated) == 2
  assert store.count('keywords', {'status': 'archived'}) == 2


def test_create_store_memory_backend():
  assert isinstance(create_store(Config(data={'store': {'backend': 'memory'}})), MemoryStore)


def test_create_store_unknown_backend():
  with pytest.raises(ConfigurationError):
    create_store(Config(data={'store': {'backend': 'sqlite'}}))


def test_chunked():
  assert list(chunked([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]
