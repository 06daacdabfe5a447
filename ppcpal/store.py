"""
Persistence layer
=================

Jobs talk to a small table-oriented ``Store`` interface. ``SupabaseStore``
is the production backend (Supabase / PostgREST); ``MemoryStore`` keeps rows
in process for dry runs and tests.

Filters are plain dicts: ``{'status': 'active'}`` means equality and a
``column__op`` key selects another operator (``neq``, ``gt``, ``gte``,
``lt``, ``lte``, ``in``, ``is``).
"""

import copy
import logging
import threading
import uuid
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from .exceptions import ConfigurationError, StoreError

logger = logging.getLogger(__name__)

OPERATORS = ('eq', 'neq', 'gt', 'gte', 'lt', 'lte', 'in', 'is')


def _split(key: str):
  column, _, op = key.partition('__')
  op = op or 'eq'
  if op not in OPERATORS:
    raise StoreError(f"Unsupported filter operator '{op}' in '{key}'")
  return column, op


def _plain(value: Any) -> Any:
  """Normalize values to what the database would hand back"""
  if isinstance(value, datetime):
    if value.tzinfo is None:
      value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()
  if isinstance(value, date):
    return value.isoformat()
  if isinstance(value, dict):
    return {k: _plain(v) for k, v in value.items()}
  if isinstance(value, (list, tuple)):
    return [_plain(v) for v in value]
  return value


def _comparable(a: Any, b: Any):
  if isinstance(a, (int, float)) and isinstance(b, (int, float)):
    return a, b
  return str(a), str(b)


def _matches(row: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
  for key, expected in (filters or {}).items():
    column, op = _split(key)
    actual = row.get(column)
    expected = _plain(expected)

    if op == 'is':
      if expected is None or expected == 'null':
        if actual is not None:
          return False
      elif actual != expected:
        return False
      continue
    if op == 'in':
      if str(actual) not in {str(v) for v in expected}:
        return False
      continue
    if op == 'eq':
      if actual is None or str(actual) != str(expected):
        return False
      continue
    if op == 'neq':
      if actual is not None and str(actual) == str(expected):
        return False
      continue

    if actual is None:
      return False
    left, right = _comparable(actual, expected)
    if op == 'gt' and not left > right:
      return False
    if op == 'gte' and not left >= right:
      return False
    if op == 'lt' and not left < right:
      return False
    if op == 'lte' and not left <= right:
      return False
  return True


class Store:
  """Table operations every backend provides"""

  def select(self, table: str, filters: Optional[Dict[str, Any]] = None,
             order_by: Optional[str] = None, desc: bool = False,
             limit: Optional[int] = None) -> List[Dict[str, Any]]:
    raise NotImplementedError

  def insert(self, table: str, rows) -> List[Dict[str, Any]]:
    raise NotImplementedError

  def upsert(self, table: str, rows, on_conflict: str,
             ignore_duplicates: bool = False) -> List[Dict[str, Any]]:
    raise NotImplementedError

  def update(self, table: str, values: Dict[str, Any],
             filters: Dict[str, Any]) -> List[Dict[str, Any]]:
    raise NotImplementedError

  def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
    raise NotImplementedError

  def get(self, table: str, filters: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    rows = self.select(table, filters, limit=1)
    return rows[0] if rows else None


# ============================================================================
# IN-MEMORY BACKEND
# ============================================================================

class MemoryStore(Store):
  """Process-local store with the same upsert semantics as PostgREST"""

  def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None):
    self.tables: Dict[str, List[Dict[str, Any]]] = {}
    self._lock = threading.Lock()
    for table, rows in (tables or {}).items():
      self.insert(table, rows)

  def _prepare(self, row: Dict[str, Any]) -> Dict[str, Any]:
    row = _plain(dict(row))
    row.setdefault('id', str(uuid.uuid4()))
    row.setdefault('created_at', datetime.now(timezone.utc).isoformat())
    return row

  def select(self, table, filters=None, order_by=None, desc=False, limit=None):
    with self._lock:
      rows = [copy.deepcopy(r) for r in self.tables.get(table, []) if _matches(r, filters)]
    if order_by:
      present = [r for r in rows if r.get(order_by) is not None]
      missing = [r for r in rows if r.get(order_by) is None]
      present.sort(key=lambda r: r[order_by], reverse=desc)
      rows = present + missing
    if limit is not None:
      rows = rows[:limit]
    return rows

  def insert(self, table, rows):
    if isinstance(rows, dict):
      rows = [rows]
    prepared = [self._prepare(r) for r in rows]
    with self._lock:
      self.tables.setdefault(table, []).extend(prepared)
    return copy.deepcopy(prepared)

  def upsert(self, table, rows, on_conflict, ignore_duplicates=False):
    if isinstance(rows, dict):
      rows = [rows]
    keys = [k.strip() for k in on_conflict.split(',') if k.strip()]
    written = []
    with self._lock:
      existing_rows = self.tables.setdefault(table, [])
      for row in rows:
        row = _plain(dict(row))
        match = next(
          (r for r in existing_rows
           if all(str(r.get(k)) == str(row.get(k)) for k in keys)),
          None
        )
        if match is None:
          new_row = self._prepare(row)
          existing_rows.append(new_row)
          written.append(copy.deepcopy(new_row))
        elif not ignore_duplicates:
          row.pop('id', None)
          match.update(row)
          written.append(copy.deepcopy(match))
    return written

  def update(self, table, values, filters):
    values = _plain(dict(values))
    updated = []
    with self._lock:
      for row in self.tables.get(table, []):
        if _matches(row, filters):
          row.update(values)
          updated.append(copy.deepcopy(row))
    return updated

  def count(self, table, filters=None):
    with self._lock:
      return sum(1 for r in self.tables.get(table, []) if _matches(r, filters))


# ============================================================================
# SUPABASE BACKEND
# ============================================================================

class SupabaseStore(Store):
  """Store backed by a supabase-py client"""

  def __init__(self, client: Any):
    self.client = client

  @classmethod
  def from_credentials(cls, url: str, key: str) -> 'SupabaseStore':
    from supabase import create_client

    if not (url and key):
      raise ConfigurationError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required")
    return cls(create_client(url, key))

  @staticmethod
  def _apply_filters(query, filters: Optional[Dict[str, Any]]):
    for key, value in (filters or {}).items():
      column, op = _split(key)
      value = _plain(value)
      if op == 'in':
        query = query.in_(column, list(value))
      elif op == 'is':
        query = query.is_(column, 'null' if value is None else str(value).lower())
      else:
        query = getattr(query, op)(column, value)
    return query

  def _execute(self, query, table: str, operation: str):
    try:
      return query.execute()
    except Exception as e:
      logger.error(f"SUPABASE ERROR [{table}.{operation}] {e}")
      raise StoreError(str(e), table=table, operation=operation) from e

  def select(self, table, filters=None, order_by=None, desc=False, limit=None):
    query = self._apply_filters(self.client.table(table).select('*'), filters)
    if order_by:
      query = query.order(order_by, desc=desc)
    if limit is not None:
      query = query.limit(limit)
    return self._execute(query, table, 'select').data or []

  def insert(self, table, rows):
    payload = _plain(rows if isinstance(rows, list) else [rows])
    if not payload:
      return []
    return self._execute(self.client.table(table).insert(payload), table, 'insert').data or []

  def upsert(self, table, rows, on_conflict, ignore_duplicates=False):
    payload = _plain(rows if isinstance(rows, list) else [rows])
    if not payload:
      return []
    query = self.client.table(table).upsert(
      payload, on_conflict=on_conflict, ignore_duplicates=ignore_duplicates
    )
    return self._execute(query, table, 'upsert').data or []

  def update(self, table, values, filters):
    if not filters:
      raise StoreError("Refusing to update without filters", table=table, operation='update')
    query = self._apply_filters(self.client.table(table).update(_plain(values)), filters)
    return self._execute(query, table, 'update').data or []

  def count(self, table, filters=None):
    query = self._apply_filters(self.client.table(table).select('id', count='exact'), filters)
    result = self._execute(query, table, 'count')
    return int(result.count or 0)


def create_store(config) -> Store:
  """Build the store named by ``store.backend`` (supabase or memory)"""
  backend = config.get('store.backend', 'supabase')
  if backend == 'memory':
    logger.info("Using in-memory store (nothing is persisted)")
    return MemoryStore()
  if backend == 'supabase':
    url = config.secret('SUPABASE_URL')
    key = config.secret('SUPABASE_SERVICE_ROLE_KEY') or config.secret('SUPABASE_ANON_KEY')
    return SupabaseStore.from_credentials(url, key)
  raise ConfigurationError(f"Unknown store backend: {backend}")


def chunked(rows: List[Any], size: int) -> Iterable[List[Any]]:
  for i in range(0, len(rows), size):
    yield rows[i:i + size]
