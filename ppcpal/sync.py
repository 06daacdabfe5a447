"""
Amazon Ads sync pipeline
========================

Pulls entities and performance reports for a connection and reconciles them
into the store with idempotent upserts keyed on Amazon ids:

  campaigns   (connection_id, amazon_campaign_id)
  ad_groups   (campaign_id, amazon_adgroup_id)
  keywords    (adgroup_id, amazon_keyword_id)
  targets     (adgroup_id, amazon_target_id)

Daily report rows also land in ``fact_performance_daily`` which feeds the
rules engine, anomaly detection and bid observations.
"""

import logging
import time
import traceback
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import requests

from .api import AmazonAdsAPI, ReportRequest
from .auth import ConnectionService
from .config import timing_logger
from .exceptions import AmazonApiError, AuthenticationError, PPCPalError, StoreError
from .metrics import PerformanceMetrics, summarize
from .models import Connection, to_micros, utcnow
from .store import Store, chunked

logger = logging.getLogger(__name__)

FACT_BATCH_SIZE = 500

FULL_COLUMNS = {
  'campaigns': ['date', 'campaignId', 'impressions', 'clicks', 'cost',
                'sales7d', 'sales14d', 'purchases7d', 'purchases14d'],
  'adGroups': ['date', 'adGroupId', 'campaignId', 'impressions', 'clicks', 'cost',
               'sales7d', 'sales14d', 'purchases7d', 'purchases14d'],
  'keywords': ['date', 'keywordId', 'adGroupId', 'campaignId', 'keyword', 'matchType',
               'impressions', 'clicks', 'cost', 'sales7d', 'sales14d', 'purchases7d', 'purchases14d'],
  'targets': ['date', 'keywordId', 'adGroupId', 'campaignId', 'targeting',
              'impressions', 'clicks', 'cost', 'sales7d', 'sales14d', 'purchases7d', 'purchases14d'],
}
MINIMAL_COLUMNS = {
  'campaigns': ['date', 'campaignId', 'impressions', 'clicks', 'cost', 'sales14d', 'purchases14d'],
  'adGroups': ['date', 'adGroupId', 'impressions', 'clicks', 'cost', 'sales14d', 'purchases14d'],
  'keywords': ['date', 'keywordId', 'impressions', 'clicks', 'cost', 'sales14d', 'purchases14d'],
  'targets': ['date', 'keywordId', 'impressions', 'clicks', 'cost', 'sales14d', 'purchases14d'],
}
SEARCH_TERM_COLUMNS = [
  'date', 'campaignId', 'adGroupId', 'keywordId', 'keyword', 'searchTerm', 'matchType',
  'targeting', 'impressions', 'clicks', 'cost', 'purchases7d', 'sales7d', 'purchases1d',
]

# report kind -> (table, entity_type, id column on the report row, amazon id column on the table)
KIND_TABLES = {
  'campaigns': ('campaigns', 'campaign', 'campaignId', 'amazon_campaign_id'),
  'adGroups': ('ad_groups', 'ad_group', 'adGroupId', 'amazon_adgroup_id'),
  'keywords': ('keywords', 'keyword', 'keywordId', 'amazon_keyword_id'),
  # spTargeting reports carry target ids in the keywordId column
  'targets': ('targets', 'target', 'keywordId', 'amazon_target_id'),
}
CONFLICT_KEYS = {
  'campaigns': 'connection_id,amazon_campaign_id',
  'ad_groups': 'campaign_id,amazon_adgroup_id',
  'keywords': 'adgroup_id,amazon_keyword_id',
  'targets': 'adgroup_id,amazon_target_id',
}


class SyncPipeline:
  """Entity and performance sync for stored Amazon connections"""

  def __init__(self, store: Store, connections: ConnectionService, config=None):
    self.store = store
    self.connections = connections
    self.config = config

  def _setting(self, key: str, default):
    return self.config.get(key, default) if self.config is not None else default

  # ==========================================================================
  # SYNC JOB BOOKKEEPING
  # ==========================================================================

  def _start_job(self, connection: Connection, now: datetime) -> Dict[str, Any]:
    rows = self.store.insert('sync_jobs', {
      'user_id': connection.user_id,
      'connection_id': connection.id,
      'profile_id': connection.profile_id,
      'status': 'running',
      'phase': 'starting',
      'progress': 0,
      'started_at': now,
    })
    return rows[0]

  def _progress(self, job: Dict[str, Any], phase: str, progress: int) -> None:
    self.store.update('sync_jobs', {'phase': phase, 'progress': progress}, {'id': job['id']})
    logger.info(f"Sync job {job['id']}: {phase} ({progress}%)")

  def _finish_job(self, job: Dict[str, Any], status: str, diagnostics: Dict[str, Any],
                  totals: Dict[str, Any], error: Optional[Dict[str, Any]] = None) -> None:
    values = {
      'status': status,
      'phase': 'complete' if status == 'success' else 'failed',
      'progress': 100,
      'finished_at': utcnow(),
      'diagnostics': diagnostics,
      'totals': totals,
    }
    if error:
      values['error_details'] = error
    self.store.update('sync_jobs', values, {'id': job['id']})

  def _fail_job(self, job: Dict[str, Any], error: Exception, diagnostics: Dict[str, Any],
                totals: Dict[str, Any]) -> None:
    details = {'error': str(error), 'code': getattr(error, 'code', None) or type(error).__name__}
    self._finish_job(job, 'error', diagnostics, totals, details)

  # ==========================================================================
  # FULL SYNC
  # ==========================================================================

  def sync_connection(self, connection_id: str, date_range_days: Optional[int] = None,
                      time_unit: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Sync entities, performance and budget usage for one connection"""
    start_time = time.time()
    now = now or utcnow()
    date_range_days = date_range_days or self._setting('sync.date_range_days', 30)
    time_unit = (time_unit or self._setting('sync.time_unit', 'DAILY')).upper()
    logger.info(f"=== Syncing connection {connection_id} ({date_range_days} days, {time_unit}) ===")

    connection = self.connections.get_connection(connection_id)
    if connection is None:
      return {'success': False, 'connection_id': connection_id, 'error': 'Connection not found'}
    if not connection.is_active:
      logger.warning(f"Connection {connection_id} is {connection.status}, skipping sync")
      return {'success': False, 'connection_id': connection_id,
              'error': f"Connection is {connection.status} - reconnect required"}

    job = self._start_job(connection, now)
    diagnostics: Dict[str, Any] = {'write_errors': [], 'fallbacks': [], 'report_errors': {},
                                   'unmatched_rows': {}, 'skipped_entities': {}}
    totals: Dict[str, Any] = {}
    results = {'success': False, 'connection_id': connection_id, 'job_id': job['id'],
               'profile_id': connection.profile_id}

    try:
      api = self.connections.api_for(connection, now)

      self._progress(job, 'entities', 10)
      entity_index = self._sync_entities(api, connection, now, totals, diagnostics)

      self._progress(job, 'performance', 40)
      end_date = now.date()
      campaign_days = self._sync_performance(api, connection, entity_index, end_date,
                                             date_range_days, time_unit, now, totals, diagnostics)

      self._progress(job, 'budget_usage', 90)
      totals['budget_snapshots'] = self._snapshot_budget_usage(
        connection, entity_index, campaign_days, end_date, now
      )

      self._finish_job(job, 'success', diagnostics, totals)
      results['success'] = True
      results['summary'] = summarize(self.store.select('campaigns', {'connection_id': connection.id}))
    except PPCPalError as e:
      logger.error(f"Sync failed for connection {connection_id}: {e}")
      self._fail_job(job, e, diagnostics, totals)
      results['error'] = str(e)
    except Exception as e:
      logger.error(f"Sync failed for connection {connection_id} with unexpected error: {e}")
      logger.error(traceback.format_exc())
      self._fail_job(job, e, diagnostics, totals)
      results['error'] = str(e)

    results['totals'] = totals
    results['diagnostics'] = diagnostics
    results['execution_time_seconds'] = round(time.time() - start_time, 2)
    logger.info(f"Sync {'complete' if results['success'] else 'failed'} for {connection.profile_id} "
                f"in {results['execution_time_seconds']:.2f}s: {totals}")
    return results

  @timing_logger('sync_all')
  def sync_all(self, profile_id: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Sync every active connection; one connection's failure does not stop the rest"""
    start_time = time.time()
    connections = self.connections.active_connections(profile_id)
    results = {'connections': len(connections), 'succeeded': 0, 'failed': 0, 'runs': []}

    for connection in connections:
      try:
        run = self.sync_connection(connection.id, now=now)
      except Exception as e:
        logger.error(f"Sync of connection {connection.id} aborted: {e}")
        run = {'success': False, 'connection_id': connection.id, 'error': str(e)}
      results['runs'].append(run)
      results['succeeded' if run.get('success') else 'failed'] += 1

    results['execution_time_seconds'] = round(time.time() - start_time, 2)
    return results

  # ==========================================================================
  # PHASE 1: ENTITIES
  # ==========================================================================

  def _sync_entities(self, api: AmazonAdsAPI, connection: Connection, now: datetime,
                     totals: Dict[str, Any], diagnostics: Dict[str, Any]) -> Dict[str, Dict[str, Dict]]:
    """Upsert campaigns, ad groups, keywords and targets; returns natural keys per Amazon id"""
    index: Dict[str, Dict[str, Dict]] = {kind: {} for kind in KIND_TABLES}
    profile_id = connection.profile_id

    campaign_rows = []
    for campaign in api.list_campaigns():
      if not campaign.campaign_id or campaign.campaign_id == 'None' or not campaign.name:
        logger.warning(f"Skipping invalid campaign: {campaign}")
        continue
      campaign_rows.append({
        'connection_id': connection.id,
        'profile_id': profile_id,
        'amazon_campaign_id': campaign.campaign_id,
        'name': campaign.name,
        'campaign_type': campaign.campaign_type,
        'targeting_type': campaign.targeting_type,
        'status': campaign.state.lower() if campaign.state else 'unknown',
        'daily_budget': campaign.daily_budget or None,
        'start_date': campaign.start_date,
        'placement_bidding': campaign.bidding.get('placementBidding') or [],
        'last_synced_at': now,
      })
    stored = self._upsert('campaigns', campaign_rows, diagnostics)
    local_campaigns = {r['amazon_campaign_id']: r for r in stored}
    for amazon_id, row in local_campaigns.items():
      index['campaigns'][amazon_id] = {
        'connection_id': connection.id, 'amazon_campaign_id': amazon_id,
        '_local_id': row['id'], '_daily_budget': row.get('daily_budget'),
      }
    campaign_ids = list(local_campaigns)

    ad_group_rows = []
    skipped = 0
    if campaign_ids:
      for ad_group in api.list_ad_groups(campaign_ids):
        parent = local_campaigns.get(ad_group.campaign_id)
        if parent is None or not ad_group.name:
          skipped += 1
          continue
        ad_group_rows.append({
          'campaign_id': parent['id'],
          'profile_id': profile_id,
          'amazon_campaign_id': ad_group.campaign_id,
          'amazon_adgroup_id': ad_group.ad_group_id,
          'name': ad_group.name,
          'status': ad_group.state.lower() if ad_group.state else 'enabled',
          'default_bid': ad_group.default_bid,
          'last_synced_at': now,
        })
    diagnostics['skipped_entities']['ad_groups'] = skipped
    stored = self._upsert('ad_groups', ad_group_rows, diagnostics)
    local_ad_groups = {r['amazon_adgroup_id']: r for r in stored}
    for amazon_id, row in local_ad_groups.items():
      index['adGroups'][amazon_id] = {'campaign_id': row['campaign_id'], 'amazon_adgroup_id': amazon_id}

    keyword_rows, target_rows = [], []
    skipped_keywords = skipped_targets = 0
    if campaign_ids:
      for keyword in api.list_keywords(campaign_ids):
        parent = local_ad_groups.get(keyword.ad_group_id)
        if parent is None or not keyword.keyword_text:
          skipped_keywords += 1
          continue
        keyword_rows.append({
          'adgroup_id': parent['id'],
          'profile_id': profile_id,
          'amazon_campaign_id': keyword.campaign_id,
          'amazon_adgroup_id': keyword.ad_group_id,
          'amazon_keyword_id': keyword.keyword_id,
          'keyword_text': keyword.keyword_text,
          'match_type': (keyword.match_type or 'exact').lower(),
          'bid': keyword.bid or None,
          'status': keyword.state.lower() if keyword.state else 'enabled',
          'last_synced_at': now,
        })
      for target in api.list_targets(campaign_ids):
        parent = local_ad_groups.get(target.ad_group_id)
        if parent is None:
          skipped_targets += 1
          continue
        target_rows.append({
          'adgroup_id': parent['id'],
          'profile_id': profile_id,
          'amazon_campaign_id': target.campaign_id,
          'amazon_adgroup_id': target.ad_group_id,
          'amazon_target_id': target.target_id,
          'expression': target.expression,
          'type': target.expression_type.lower() if target.expression_type else None,
          'bid': target.bid or None,
          'status': target.state.lower() if target.state else 'enabled',
          'last_synced_at': now,
        })
    diagnostics['skipped_entities']['keywords'] = skipped_keywords
    diagnostics['skipped_entities']['targets'] = skipped_targets

    for row in self._upsert('keywords', keyword_rows, diagnostics):
      index['keywords'][row['amazon_keyword_id']] = {
        'adgroup_id': row['adgroup_id'], 'amazon_keyword_id': row['amazon_keyword_id']}
    for row in self._upsert('targets', target_rows, diagnostics):
      index['targets'][row['amazon_target_id']] = {
        'adgroup_id': row['adgroup_id'], 'amazon_target_id': row['amazon_target_id']}

    totals.update({
      'campaigns': len(index['campaigns']),
      'ad_groups': len(index['adGroups']),
      'keywords': len(index['keywords']),
      'targets': len(index['targets']),
    })
    logger.info(f"Entity sync complete: {totals['campaigns']} campaigns, {totals['ad_groups']} ad groups, "
                f"{totals['keywords']} keywords, {totals['targets']} targets")
    return index

  def _upsert(self, table: str, rows: List[Dict[str, Any]],
              diagnostics: Dict[str, Any]) -> List[Dict[str, Any]]:
    stored = []
    for batch in chunked(rows, FACT_BATCH_SIZE):
      try:
        stored.extend(self.store.upsert(table, batch, on_conflict=CONFLICT_KEYS[table]))
      except StoreError as e:
        logger.error(f"Failed to upsert {len(batch)} rows into {table}: {e}")
        diagnostics['write_errors'].append({'table': table, 'rows': len(batch), 'error': str(e)})
    return stored

  # ==========================================================================
  # PHASE 2: PERFORMANCE
  # ==========================================================================

  def _report(self, kind: str, columns: List[str], end_date, days: int, time_unit: str,
              ids: List[str]) -> ReportRequest:
    return ReportRequest(kind=kind, columns=columns, end_date=end_date, days=days,
                         time_unit=time_unit, entity_ids=ids)

  def _fetch_with_fallbacks(self, api: AmazonAdsAPI, kind: str, ids: List[str], first_error: Exception,
                            end_date, days: int, time_unit: str,
                            diagnostics: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Retry a failed report with minimal columns, then without the id filter"""
    attempts = [('minimal_columns', MINIMAL_COLUMNS[kind], ids)]
    if ids:
      attempts.append(('unfiltered', FULL_COLUMNS[kind], []))

    last_error = first_error
    for label, columns, filter_ids in attempts:
      logger.info(f"Retrying {kind} report with {label.replace('_', ' ')}")
      try:
        rows = api.fetch_report(self._report(kind, columns, end_date, days, time_unit, filter_ids))
        diagnostics['fallbacks'].append(f"{kind}:{label}")
        return rows
      except (PPCPalError, ValueError, requests.RequestException) as e:
        logger.warning(f"{kind} report fallback '{label}' failed: {e}")
        last_error = e

    diagnostics['report_errors'][kind] = str(last_error)
    return []

  def _sync_performance(self, api: AmazonAdsAPI, connection: Connection,
                        index: Dict[str, Dict[str, Dict]], end_date, days: int, time_unit: str,
                        now: datetime, totals: Dict[str, Any],
                        diagnostics: Dict[str, Any]) -> Dict[str, Dict[str, PerformanceMetrics]]:
    """Fetch the four performance reports and fold them into entities and facts"""
    requests_by_kind = {
      kind: self._report(kind, FULL_COLUMNS[kind], end_date, days, time_unit, list(index[kind]))
      for kind in KIND_TABLES
    }
    fetched = api.fetch_reports_parallel(requests_by_kind)

    campaign_days: Dict[str, Dict[str, PerformanceMetrics]] = {}
    for kind, outcome in fetched.items():
      if isinstance(outcome, Exception):
        rows = self._fetch_with_fallbacks(api, kind, list(index[kind]), outcome, end_date, days,
                                          time_unit, diagnostics)
      else:
        rows = outcome

      per_entity, per_day = self._aggregate(kind, rows)
      totals[f'{kind}_report_rows'] = len(rows)
      totals[f'{kind}_metrics_updated'] = self._write_entity_metrics(kind, per_entity, index, now,
                                                                     diagnostics)
      totals[f'{kind}_facts'] = self._write_facts(kind, connection.profile_id, per_day, diagnostics)
      if kind == 'campaigns':
        for (day, entity_id, _, _), metrics in per_day.items():
          campaign_days.setdefault(entity_id, {})[day] = metrics

    return campaign_days

  @staticmethod
  def _aggregate(kind: str, rows: List[Dict[str, Any]]) -> Tuple[Dict[str, Dict], Dict[Tuple, PerformanceMetrics]]:
    _, _, id_column, _ = KIND_TABLES[kind]
    per_entity: Dict[str, Dict[str, Any]] = {}
    per_day: Dict[Tuple, PerformanceMetrics] = defaultdict(PerformanceMetrics)

    for row in rows:
      entity_id = row.get(id_column)
      if entity_id in (None, ''):
        continue
      entity_id = str(entity_id)
      metrics = PerformanceMetrics.from_report_row(row)
      sales_14d = float(row.get('sales14d') or 0)
      orders_14d = int(float(row.get('purchases14d') or 0))

      entry = per_entity.setdefault(entity_id, {'metrics': PerformanceMetrics(), 'sales_14d': 0.0,
                                                'orders_14d': 0})
      entry['metrics'] = entry['metrics'] + metrics
      entry['sales_14d'] += sales_14d
      entry['orders_14d'] += orders_14d

      if row.get('date'):
        key = (str(row['date'])[:10], entity_id,
               str(row.get('campaignId') or ''), str(row.get('adGroupId') or ''))
        per_day[key] = per_day[key] + metrics

    return per_entity, dict(per_day)

  def _write_entity_metrics(self, kind: str, per_entity: Dict[str, Dict], index: Dict[str, Dict[str, Dict]],
                            now: datetime, diagnostics: Dict[str, Any]) -> int:
    table, _, _, _ = KIND_TABLES[kind]
    rows = []
    unmatched = 0
    for entity_id, entry in per_entity.items():
      keys = index[kind].get(entity_id)
      if keys is None:
        unmatched += 1
        continue
      row = {k: v for k, v in keys.items() if not k.startswith('_')}
      row.update(entry['metrics'].to_row())
      row['sales_14d'] = round(entry['sales_14d'], 2)
      row['orders_14d'] = entry['orders_14d']
      row['last_updated'] = now
      rows.append(row)

    if unmatched:
      diagnostics['unmatched_rows'][kind] = unmatched
    return len(self._upsert(table, rows, diagnostics))

  def _write_facts(self, kind: str, profile_id: str, per_day: Dict[Tuple, PerformanceMetrics],
                   diagnostics: Dict[str, Any]) -> int:
    _, entity_type, _, _ = KIND_TABLES[kind]
    rows = [{
      'date': day,
      'profile_id': profile_id,
      'entity_type': entity_type,
      'entity_id': entity_id,
      'campaign_id': campaign_id or (entity_id if entity_type == 'campaign' else None),
      'ad_group_id': ad_group_id or (entity_id if entity_type == 'ad_group' else None),
      'impressions': m.impressions,
      'clicks': m.clicks,
      'spend': m.spend,
      'sales': m.sales,
      'orders': m.orders,
    } for (day, entity_id, campaign_id, ad_group_id), m in per_day.items()]

    written = 0
    for batch in chunked(rows, FACT_BATCH_SIZE):
      try:
        written += len(self.store.upsert('fact_performance_daily', batch,
                                         on_conflict='date,profile_id,entity_type,entity_id'))
      except StoreError as e:
        diagnostics['write_errors'].append({'table': 'fact_performance_daily', 'rows': len(batch),
                                            'error': str(e)})
    return written

  # ==========================================================================
  # PHASE 3: BUDGET USAGE
  # ==========================================================================

  def _snapshot_budget_usage(self, connection: Connection, index: Dict[str, Dict[str, Dict]],
                             campaign_days: Dict[str, Dict[str, PerformanceMetrics]],
                             end_date, now: datetime) -> int:
    day = end_date.isoformat()
    rows = []
    for campaign_id, keys in index['campaigns'].items():
      budget = float(keys.get('_daily_budget') or 0)
      today = campaign_days.get(campaign_id, {}).get(day)
      if budget <= 0 or today is None:
        continue
      rows.append({
        'profile_id': connection.profile_id,
        'campaign_id': campaign_id,
        'date': day,
        'budget': budget,
        'spend': today.spend,
        'usage_percentage': round(today.spend / budget * 100, 2),
        'captured_at': now,
      })
    if rows:
      self.store.upsert('fact_budget_usage', rows, on_conflict='profile_id,campaign_id,date')
    return len(rows)

  # ==========================================================================
  # SEARCH TERMS
  # ==========================================================================

  def sync_search_terms(self, connection_id: str, date_range_days: Optional[int] = None,
                        now: Optional[datetime] = None) -> Dict[str, Any]:
    """Daily search term report into fact_search_term_daily"""
    start_time = time.time()
    now = now or utcnow()
    days = date_range_days or self._setting('sync.search_term_days', 14)
    results = {'connection_id': connection_id, 'rows': 0, 'upserted': 0, 'errors': []}

    connection = self.connections.get_connection(connection_id)
    if connection is None or not connection.is_active:
      results['errors'].append('Connection not found or inactive')
      return results

    logger.info(f"=== Syncing search terms for profile {connection.profile_id} ({days} days) ===")
    try:
      api = self.connections.api_for(connection, now)
      terms = api.fetch_report(ReportRequest(kind='searchTerms', columns=SEARCH_TERM_COLUMNS,
                                             end_date=now.date(), days=days, time_unit='DAILY'))
    except (AmazonApiError, AuthenticationError) as e:
      logger.error(f"Search term sync failed for {connection.profile_id}: {e}")
      results['errors'].append(str(e))
      return results

    results['rows'] = len(terms)
    for batch in chunked(terms, FACT_BATCH_SIZE):
      rows = [{
        'date': str(term.get('date') or now.date().isoformat())[:10],
        'profile_id': connection.profile_id,
        'campaign_id': str(term.get('campaignId') or ''),
        'ad_group_id': str(term.get('adGroupId') or ''),
        'keyword_id': str(term['keywordId']) if term.get('keywordId') else None,
        'keyword_text': term.get('keyword') or term.get('keywordText'),
        'search_term': (term.get('searchTerm') or '').strip().lower(),
        'match_type': (term.get('matchType') or 'BROAD').upper(),
        'targeting': term.get('targeting'),
        'impressions': int(float(term.get('impressions') or 0)),
        'clicks': int(float(term.get('clicks') or 0)),
        'cost_micros': to_micros(term.get('cost')),
        'attributed_conversions_1d': int(float(term.get('purchases1d') or 0)),
        'attributed_conversions_7d': int(float(term.get('purchases7d') or 0)),
        'attributed_sales_7d_micros': to_micros(term.get('sales7d')),
      } for term in batch if term.get('searchTerm')]
      try:
        results['upserted'] += len(self.store.upsert(
          'fact_search_term_daily', rows,
          on_conflict='date,profile_id,campaign_id,ad_group_id,search_term,match_type'
        ))
      except StoreError as e:
        results['errors'].append(f"Upsert error for {connection.profile_id}: {e}")

    results['execution_time_seconds'] = round(time.time() - start_time, 2)
    logger.info(f"Search term sync: {results['upserted']}/{results['rows']} rows stored")
    return results

  # ==========================================================================
  # MAINTENANCE
  # ==========================================================================

  def cleanup_stuck_syncs(self, user_id: Optional[str] = None, older_than_minutes: int = 10,
                          now: Optional[datetime] = None) -> Dict[str, Any]:
    """Mark sync jobs running longer than the cutoff as timed out"""
    now = now or utcnow()
    filters = {'status': 'running', 'started_at__lt': now - timedelta(minutes=older_than_minutes)}
    if user_id:
      filters['user_id'] = user_id

    stuck = self.store.select('sync_jobs', filters)
    if not stuck:
      return {'message': 'No stuck sync jobs found', 'cleaned': 0, 'jobs': []}

    self.store.update('sync_jobs', {
      'status': 'error',
      'finished_at': now,
      'error_details': {
        'error': f'Sync job timed out after {older_than_minutes} minutes',
        'code': 'TIMEOUT',
        'cleanup_timestamp': now.isoformat(),
      },
    }, {'id__in': [job['id'] for job in stuck]})

    logger.info(f"Cleaned up {len(stuck)} stuck sync jobs")
    return {
      'message': f'Cleaned up {len(stuck)} stuck sync jobs',
      'cleaned': len(stuck),
      'jobs': [{'id': j['id'], 'phase': j.get('phase'), 'started_at': j.get('started_at')} for j in stuck],
    }
