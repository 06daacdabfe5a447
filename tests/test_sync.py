"""Entity and performance sync into the store."""

from datetime import timedelta

from conftest import NOW, FakeConnections
from ppcpal.exceptions import ReportError
from ppcpal.models import AdGroup, Campaign, Keyword, Target
from ppcpal.sync import SyncPipeline


def _seed_entities(api):
  api.campaigns = [
    Campaign.from_api({'campaignId': 1, 'name': 'Brand', 'state': 'ENABLED', 'budget': {'budget': 50},
                       'targetingType': 'MANUAL'}),
    Campaign.from_api({'campaignId': 2, 'name': '', 'state': 'ENABLED'}),
  ]
  api.ad_groups = [
    AdGroup.from_api({'adGroupId': 10, 'campaignId': 1, 'name': 'Core', 'state': 'ENABLED', 'defaultBid': 0.75}),
    AdGroup.from_api({'adGroupId': 11, 'campaignId': 99, 'name': 'Orphan', 'state': 'ENABLED'}),
  ]
  api.keywords = [Keyword.from_api({'keywordId': 100, 'adGroupId': 10, 'campaignId': 1,
                                    'keywordText': 'organic soil', 'matchType': 'EXACT',
                                    'state': 'ENABLED', 'bid': 1.2})]
  api.targets = [Target.from_api({'targetId': 200, 'adGroupId': 10, 'campaignId': 1,
                                  'expressionType': 'AUTO', 'state': 'ENABLED', 'bid': 0.5})]


def _campaign_row(day, cost, sales, **extra):
  row = {'date': day, 'campaignId': '1', 'impressions': 1000, 'clicks': 20, 'cost': cost,
         'sales7d': sales, 'purchases7d': 2, 'sales14d': sales, 'purchases14d': 2}
  row.update(extra)
  return row


def test_sync_connection_writes_entities_metrics_and_facts(store, connections, fake_api):
  _seed_entities(fake_api)
  fake_api.reports = {
    'campaigns': [_campaign_row('2026-10-18', 10.0, 40.0), _campaign_row('2026-10-19', 5.0, 0.0)],
    'keywords': [{'date': '2026-10-19', 'keywordId': '100', 'adGroupId': '10', 'campaignId': '1',
                  'impressions': 300, 'clicks': 9, 'cost': 4.5, 'sales7d': 30, 'purchases7d': 1},
                 {'date': '2026-10-19', 'keywordId': '999', 'impressions': 1}],
  }

  result = SyncPipeline(store, connections).sync_connection('conn-1', now=NOW)

  assert result['success']
  assert result['totals']['campaigns'] == 1
  assert result['totals']['ad_groups'] == 1
  assert result['diagnostics']['skipped_entities']['ad_groups'] == 1
  assert result['diagnostics']['unmatched_rows'] == {'keywords': 1}

  campaign = store.get('campaigns', {'amazon_campaign_id': '1'})
  assert campaign['name'] == 'Brand'
  assert campaign['status'] == 'enabled'
  assert campaign['spend'] == 15.0
  assert campaign['sales'] == 40.0
  assert campaign['sales_14d'] == 40.0
  assert result['summary']['total_spend'] == 15.0
  assert result['summary']['campaign_count'] == 1

  facts = store.select('fact_performance_daily', {'entity_type': 'campaign'}, order_by='date')
  assert [f['date'] for f in facts] == ['2026-10-18', '2026-10-19']
  keyword_fact = store.get('fact_performance_daily', {'entity_type': 'keyword'})
  assert keyword_fact['campaign_id'] == '1' and keyword_fact['ad_group_id'] == '10'

  usage = store.get('fact_budget_usage', {'campaign_id': '1'})
  assert usage['usage_percentage'] == 10.0

  job = store.get('sync_jobs', {'id': result['job_id']})
  assert job['status'] == 'success' and job['progress'] == 100


def test_resync_is_idempotent(store, connections, fake_api):
  _seed_entities(fake_api)
  fake_api.reports = {'campaigns': [_campaign_row('2026-10-19', 5.0, 10.0)]}
  pipeline = SyncPipeline(store, connections)
  pipeline.sync_connection('conn-1', now=NOW)
  pipeline.sync_connection('conn-1', now=NOW + timedelta(hours=1))

  assert store.count('campaigns') == 1
  assert store.count('keywords') == 1
  assert store.count('fact_performance_daily') == 1


def test_failed_report_falls_back_to_minimal_columns(store, connections, fake_api):
  _seed_entities(fake_api)
  fake_api.reports = {'campaigns': ReportError('column not supported')}
  requests_seen = []

  def fetch_report(request):
    requests_seen.append(request)
    return [_campaign_row('2026-10-19', 2.0, 8.0)]

  fake_api.fetch_report = fetch_report
  result = SyncPipeline(store, connections).sync_connection('conn-1', now=NOW)

  assert result['success']
  assert result['diagnostics']['fallbacks'] == ['campaigns:minimal_columns']
  assert 'sales7d' not in requests_seen[0].columns
  assert store.get('campaigns', {'amazon_campaign_id': '1'})['spend'] == 2.0


def test_inactive_connection_is_skipped(store, connection_row, fake_api):
  connection_row['status'] = 'expired'
  store.insert('amazon_connections', connection_row)
  result = SyncPipeline(store, FakeConnections(store, fake_api)).sync_connection('conn-1', now=NOW)
  assert not result['success']
  assert 'reconnect' in result['error']
  assert store.count('sync_jobs') == 0


def test_sync_search_terms(store, connections, fake_api):
  fake_api.reports = {'searchTerms': [
    {'date': '2026-10-18', 'campaignId': 1, 'adGroupId': 10, 'keywordId': 100, 'keyword': 'soil',
     'searchTerm': ' Organic Potting Soil ', 'matchType': 'broad', 'impressions': 50, 'clicks': 5,
     'cost': 2.5, 'purchases7d': 1, 'sales7d': 19.99, 'purchases1d': 1},
    {'date': '2026-10-18', 'campaignId': 1, 'searchTerm': '', 'clicks': 1},
  ]}
  result = SyncPipeline(store, connections).sync_search_terms('conn-1', now=NOW)

  assert result['rows'] == 2 and result['upserted'] == 1
  term = store.get('fact_search_term_daily', {'search_term': 'organic potting soil'})
  assert term['cost_micros'] == 2_500_000
  assert term['attributed_sales_7d_micros'] == 19_990_000
  assert term['match_type'] == 'BROAD'


def test_cleanup_stuck_syncs(store):
  store.insert('sync_jobs', [
    {'user_id': 'user-1', 'status': 'running', 'phase': 'performance', 'started_at': NOW - timedelta(minutes=30)},
    {'user_id': 'user-1', 'status': 'running', 'phase': 'entities', 'started_at': NOW - timedelta(minutes=2)},
  ])
  result = SyncPipeline(store, None).cleanup_stuck_syncs(now=NOW)
  assert result['cleaned'] == 1
  timed_out = store.get('sync_jobs', {'phase': 'performance'})
  assert timed_out['status'] == 'error'
  assert timed_out['error_details']['code'] == 'TIMEOUT'
  assert store.get('sync_jobs', {'phase': 'entities'})['status'] == 'running'


def test_fallback_download_errors_are_recorded(store, connections, fake_api):
  _seed_entities(fake_api)
  fake_api.reports = {'campaigns': ReportError('column not supported')}

  def fetch_report(request):
    raise ValueError('Not a gzipped file')

  fake_api.fetch_report = fetch_report
  result = SyncPipeline(store, connections).sync_connection('conn-1', now=NOW)

  assert result['success']
  assert 'Not a gzipped file' in result['diagnostics']['report_errors']['campaigns']


class _UnreadableTokenConnections(FakeConnections):
  def api_for(self, connection, now=None):
    if connection.id == 'conn-bad':
      raise ValueError('Stored token could not be decrypted - check ENCRYPTION_KEY')
    return self.api


def test_sync_all_continues_after_connection_failure(store, connection_row, fake_api):
  store.insert('amazon_connections', dict(connection_row, id='conn-bad', profile_id='222'))
  store.insert('amazon_connections', connection_row)
  _seed_entities(fake_api)

  result = SyncPipeline(store, _UnreadableTokenConnections(store, fake_api)).sync_all(now=NOW)

  assert result['connections'] == 2
  assert result['succeeded'] == 1 and result['failed'] == 1
  bad_job = store.get('sync_jobs', {'connection_id': 'conn-bad'})
  assert bad_job['status'] == 'error'
  assert bad_job['error_details']['code'] == 'ValueError'
  assert store.get('sync_jobs', {'connection_id': 'conn-1'})['status'] == 'success'
