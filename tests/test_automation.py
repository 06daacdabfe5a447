"""Hourly orchestration across jobs."""

from conftest import NOW
from ppcpal.automation import Automation
from ppcpal.config import Config
from ppcpal.exceptions import StoreError


def _app(store, connections=None, **config):
  return Automation(Config(data=config), store, connections=connections)


def test_hourly_skips_without_active_connections(store):
  result = _app(store).run_hourly(NOW)
  assert result['skipped'] and result['reason'] == 'no_active_connections'


def test_hourly_runs_every_task(store, connections):
  result = _app(store, connections).run_hourly(NOW)

  assert result['active_connections'] == 1
  assert list(result['tasks']) == ['daypart_executor', 'rules_engine', 'anomalies', 'action_worker']
  assert all(task['status'] == 'ok' for task in result['tasks'].values())
  assert store.get('anomaly_runs', {'time_window': 'intraday'}) is not None
  assert 'execution_time_seconds' in result


def test_hourly_isolates_task_failures(store, connections):
  app = _app(store, connections)

  def broken(**kwargs):
    raise StoreError('rules table unavailable', table='automation_rules')

  app.rules.run = broken
  result = app.run_hourly(NOW)

  assert result['tasks']['rules_engine']['status'] == 'error'
  assert 'unavailable' in result['tasks']['rules_engine']['error']
  assert result['tasks']['action_worker']['status'] == 'ok'


def test_optimizer_reads_config_section(store):
  app = _app(store, bayesian_optimizer={'target_acos': 0.3})
  assert app.optimizer.overrides == {'target_acos': 0.3}
