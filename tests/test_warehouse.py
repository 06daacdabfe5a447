"""BigQuery export with a recording client."""

from google.cloud import bigquery

from conftest import NOW
from ppcpal.warehouse import BigQueryExporter


class FakeJob:
  def __init__(self):
    self.waited = False

  def result(self):
    self.waited = True


class FakeBigQueryClient:
  def __init__(self):
    self.datasets = []
    self.loads = []
    self.jobs = []

  def create_dataset(self, dataset, exists_ok=False):
    self.datasets.append((dataset.dataset_id, dataset.location, exists_ok))

  def load_table_from_json(self, rows, destination, job_config=None):
    self.loads.append((destination, rows, job_config))
    job = FakeJob()
    self.jobs.append(job)
    return job


def _fact(entity_type, entity_id, day, **extra):
  row = {'date': day, 'profile_id': '111', 'entity_type': entity_type, 'entity_id': entity_id,
         'campaign_id': '1', 'ad_group_id': None, 'impressions': 100, 'clicks': 4, 'spend': 2.5,
         'sales': 10.0, 'orders': 1}
  row.update(extra)
  return row


def test_to_rows_normalizes_types():
  rows = BigQueryExporter.to_rows([_fact('campaign', 1, '2026-10-18', clicks='4', spend=None)], NOW)
  assert rows == [{
    'report_date': '2026-10-18', 'profile_id': '111', 'campaign_id': '1', 'ad_group_id': None,
    'entity_id': '1', 'impressions': 100, 'clicks': 4, 'spend': 0.0, 'sales': 10.0, 'orders': 1,
    'exported_at': NOW.isoformat(),
  }]


def test_export_appends_recent_facts_per_table(store):
  store.insert('fact_performance_daily', [
    _fact('campaign', '1', '2026-10-18'),
    _fact('campaign', '1', '2026-08-01'),
    _fact('keyword', 'kw-1', '2026-10-17', ad_group_id='10'),
    _fact('campaign', '2', '2026-10-18', profile_id='222'),
  ])
  client = FakeBigQueryClient()
  exporter = BigQueryExporter('my-project', 'amazon_ads_data', client=client, location='EU')

  result = exporter.export_performance(store, '111', days=30, now=NOW)

  assert client.datasets == [('amazon_ads_data', 'EU', True)]
  assert result['campaign_performance'] == 1
  assert result['keyword_performance'] == 1
  destination, rows, job_config = client.loads[0]
  assert destination == 'my-project.amazon_ads_data.campaign_performance'
  assert job_config.write_disposition == bigquery.WriteDisposition.WRITE_APPEND
  assert all(job.waited for job in client.jobs)


def test_empty_table_skips_load(store):
  client = FakeBigQueryClient()
  result = BigQueryExporter('p', 'd', client=client).export_performance(store, '111', now=NOW)
  assert result['campaign_performance'] == 0
  assert client.loads == []
