"""Shared fixtures: in-memory store, a fixed clock and HTTP / API fakes."""

import gzip
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from ppcpal.models import ApiResponse, Connection
from ppcpal.store import MemoryStore

NOW = datetime(2026, 10, 19, 14, 30, tzinfo=timezone.utc)


# ── HTTP fakes ──────────────────────────────────────────────────

class FakeResponse:
  def __init__(self, status_code: int = 200, body: Any = None, headers: Optional[Dict] = None,
               content: Optional[bytes] = None):
    self.status_code = status_code
    self.headers = headers or {}
    if content is not None:
      self.content = content
    elif body is None:
      self.content = b''
    elif isinstance(body, (bytes, str)):
      self.content = body.encode('utf-8') if isinstance(body, str) else body
    else:
      self.content = json.dumps(body).encode('utf-8')

  @property
  def text(self) -> str:
    return self.content.decode('utf-8', 'replace')

  @property
  def ok(self) -> bool:
    return self.status_code < 400

  def json(self):
    return json.loads(self.content)


class FakeSession:
  """Returns queued responses in order and records every call"""

  def __init__(self, responses: Optional[List[FakeResponse]] = None):
    self.responses = list(responses or [])
    self.calls: List[Dict[str, Any]] = []

  def _next(self, call: Dict[str, Any]) -> FakeResponse:
    self.calls.append(call)
    if not self.responses:
      raise AssertionError(f"Unexpected request: {call}")
    response = self.responses.pop(0)
    if isinstance(response, Exception):
      raise response
    return response

  def request(self, method, url, **kwargs):
    return self._next(dict(kwargs, method=method, url=url))

  def get(self, url, **kwargs):
    return self._next(dict(kwargs, method='GET', url=url))

  def post(self, url, **kwargs):
    return self._next(dict(kwargs, method='POST', url=url))


def gzip_json(rows: List[Dict[str, Any]]) -> bytes:
  return gzip.compress(json.dumps(rows).encode('utf-8'))


# ── API / connection fakes ──────────────────────────────────────

class FakeAPI:
  """Duck-typed AmazonAdsAPI that records mutations"""

  def __init__(self, fail: bool = False, rejected_keywords=()):
    self.calls: List[tuple] = []
    self.fail = fail
    self.rejected_keywords = set(rejected_keywords)
    self.campaigns: List[Any] = []
    self.ad_groups: List[Any] = []
    self.keywords: List[Any] = []
    self.targets: List[Any] = []
    self.reports: Dict[str, Any] = {}

  def _record(self, *call) -> ApiResponse:
    self.calls.append(call)
    if self.fail:
      return ApiResponse(success=False, error='400 INVALID_ARGUMENT', status_code=400)
    return ApiResponse(success=True, data={}, status_code=207)

  def __getattr__(self, name):
    if name.startswith(('update_', 'create_')):
      return lambda *args, **kwargs: self._record(name, *args, *kwargs.values())
    raise AttributeError(name)

  def batch_update_keywords(self, updates):
    self.calls.append(('batch_update_keywords', updates))
    failed_ids = [u['keywordId'] for u in updates if self.fail or u['keywordId'] in self.rejected_keywords]
    return {'total': len(updates), 'success': len(updates) - len(failed_ids), 'failed': len(failed_ids),
            'failed_ids': failed_ids}

  def list_campaigns(self, *args, **kwargs):
    return list(self.campaigns)

  def list_ad_groups(self, campaign_ids=None):
    return list(self.ad_groups)

  def list_keywords(self, campaign_ids=None):
    return list(self.keywords)

  def list_targets(self, campaign_ids=None):
    return list(self.targets)

  def fetch_reports_parallel(self, requests_by_name, max_workers=3):
    self.calls.append(('fetch_reports_parallel', sorted(requests_by_name)))
    return {name: self.reports.get(name, []) for name in requests_by_name}

  def fetch_report(self, request):
    self.calls.append(('fetch_report', request.kind, tuple(request.columns)))
    rows = self.reports.get(request.kind, [])
    if isinstance(rows, list) and rows and isinstance(rows[0], Exception):
      raise rows.pop(0)
    return rows


class FakeConnections:
  """Stands in for ConnectionService: hands out one FakeAPI for every profile"""

  def __init__(self, store: MemoryStore, api: Optional[FakeAPI] = None):
    self.store = store
    self.api = api or FakeAPI()

  def get_connection(self, connection_id):
    row = self.store.get('amazon_connections', {'id': connection_id})
    return Connection.from_row(row) if row else None

  def active_connections(self, profile_id=None):
    filters = {'status': 'active'}
    if profile_id:
      filters['profile_id'] = profile_id
    return [Connection.from_row(r) for r in self.store.select('amazon_connections', filters)]

  def api_for(self, connection, now=None):
    return self.api

  def api_for_profile(self, profile_id, now=None):
    return self.api


# ── fixtures ────────────────────────────────────────────────────

@pytest.fixture
def now():
  return NOW


@pytest.fixture
def store():
  return MemoryStore()


@pytest.fixture
def connection_row():
  return {
    'id': 'conn-1',
    'user_id': 'user-1',
    'profile_id': '111',
    'status': 'active',
    'region': 'NA',
    'access_token': 'plain-access',
    'refresh_token': 'plain-refresh',
    'token_expires_at': '2026-10-19T16:00:00+00:00',
  }


@pytest.fixture
def fake_api():
  return FakeAPI()


@pytest.fixture
def connections(store, connection_row, fake_api):
  store.insert('amazon_connections', connection_row)
  return FakeConnections(store, fake_api)
