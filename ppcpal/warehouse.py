"""BigQuery export of synced campaign and keyword performance."""

import logging
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from google.cloud import bigquery

from .models import utcnow
from .store import Store

logger = logging.getLogger(__name__)

PERFORMANCE_SCHEMA = [
  bigquery.SchemaField("report_date", "DATE"),
  bigquery.SchemaField("profile_id", "STRING"),
  bigquery.SchemaField("campaign_id", "STRING"),
  bigquery.SchemaField("ad_group_id", "STRING"),
  bigquery.SchemaField("entity_id", "STRING"),
  bigquery.SchemaField("impressions", "INTEGER"),
  bigquery.SchemaField("clicks", "INTEGER"),
  bigquery.SchemaField("spend", "FLOAT"),
  bigquery.SchemaField("sales", "FLOAT"),
  bigquery.SchemaField("orders", "INTEGER"),
  bigquery.SchemaField("exported_at", "TIMESTAMP"),
]

EXPORT_TABLES = {
  'campaign': 'campaign_performance',
  'keyword': 'keyword_performance',
}


class BigQueryExporter:
  """Appends daily performance facts to BigQuery tables"""

  def __init__(self, project_id: str, dataset_id: str, client: Optional[bigquery.Client] = None,
               location: str = 'US'):
    self.project_id = project_id
    self.dataset_id = dataset_id
    self.location = location
    self.client = client or bigquery.Client(project=project_id)
    self.dataset_ref = f"{project_id}.{dataset_id}"

  def ensure_dataset(self) -> None:
    dataset = bigquery.Dataset(self.dataset_ref)
    dataset.location = self.location
    self.client.create_dataset(dataset, exists_ok=True)
    logger.info(f"BigQuery dataset ready: {self.dataset_ref}")

  @staticmethod
  def to_rows(facts: List[Dict[str, Any]], exported_at: datetime) -> List[Dict[str, Any]]:
    return [{
      'report_date': str(f['date']),
      'profile_id': str(f.get('profile_id')),
      'campaign_id': str(f['campaign_id']) if f.get('campaign_id') else None,
      'ad_group_id': str(f['ad_group_id']) if f.get('ad_group_id') else None,
      'entity_id': str(f.get('entity_id')),
      'impressions': int(f.get('impressions') or 0),
      'clicks': int(f.get('clicks') or 0),
      'spend': float(f.get('spend') or 0),
      'sales': float(f.get('sales') or 0),
      'orders': int(f.get('orders') or 0),
      'exported_at': exported_at.isoformat(),
    } for f in facts]

  def load_rows(self, table: str, rows: List[Dict[str, Any]]) -> int:
    if not rows:
      return 0
    job_config = bigquery.LoadJobConfig(
      schema=PERFORMANCE_SCHEMA,
      write_disposition=bigquery.WriteDisposition.WRITE_APPEND,
    )
    job = self.client.load_table_from_json(rows, f"{self.dataset_ref}.{table}", job_config=job_config)
    job.result()
    logger.info(f"Loaded {len(rows)} rows into {self.dataset_ref}.{table}")
    return len(rows)

  def export_performance(self, store: Store, profile_id: str, days: int = 30,
                         now: Optional[datetime] = None) -> Dict[str, Any]:
    start_time = time.time()
    now = now or utcnow()
    logger.info(f"=== Exporting performance to BigQuery ({self.dataset_ref}) ===")
    self.ensure_dataset()

    since = (now - timedelta(days=days)).date().isoformat()
    results: Dict[str, Any] = {}
    for entity_type, table in EXPORT_TABLES.items():
      facts = store.select('fact_performance_daily', {
        'profile_id': profile_id, 'entity_type': entity_type, 'date__gte': since,
      }, order_by='date')
      results[table] = self.load_rows(table, self.to_rows(facts, now))

    results['execution_time_seconds'] = round(time.time() - start_time, 2)
    logger.info(f"BigQuery export complete: {results}")
    return results
