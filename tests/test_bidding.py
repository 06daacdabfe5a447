"""Beta posterior updates and Thompson sampling bid proposals."""

from datetime import date

import numpy as np
import pytest

from conftest import NOW
from ppcpal.bidding import (BayesianBidOptimizer, ObservationCollector, OptimizerConfig,
                            credible_interval, posterior_std)


def _fact(entity_id, clicks, orders, day='2026-10-18', **extra):
  row = {'date': day, 'profile_id': '111', 'entity_type': 'keyword', 'entity_id': entity_id,
         'campaign_id': '1', 'ad_group_id': '10', 'impressions': 500, 'clicks': clicks,
         'spend': 6.0, 'sales': 50.0, 'orders': orders}
  row.update(extra)
  return row


def _state(store, **overrides):
  row = {'profile_id': '111', 'entity_type': 'keyword', 'entity_id': 'kw-1', 'campaign_id': '1',
         'ad_group_id': '10', 'alpha': 40.5, 'beta': 60.5, 'current_bid_micros': 1_000_000,
         'optimization_enabled': True, 'observations_count': 14, 'total_conversions': 40,
         'total_clicks': 100, 'total_impressions': 5000, 'total_sales_micros': 1_000_000_000}
  row.update(overrides)
  return store.insert('bid_states', row)[0]


def test_credible_interval_brackets_the_mean():
  lower, upper = credible_interval(20, 80)
  assert lower < 0.2 < upper
  assert posterior_std(1, 1) == pytest.approx(np.sqrt(1 / 12))


def test_config_ignores_unknown_keys():
  config = OptimizerConfig.from_dict({'target_acos': 0.3, 'bogus': 1})
  assert config.target_acos == 0.3 and config.min_observations == 7


def test_collect_creates_then_updates_posteriors(store):
  store.insert('keywords', {'profile_id': '111', 'amazon_keyword_id': 'kw-1', 'bid': 0.85})
  store.insert('fact_performance_daily', [_fact('kw-1', 10, 2), _fact('kw-2', 0, 0)])
  collector = ObservationCollector(store)

  result = collector.collect('111', now=NOW)
  assert result['date'] == '2026-10-18'
  assert result['observations_inserted'] == 1 and result['states_created'] == 1

  state = store.get('bid_states', {'entity_id': 'kw-1'})
  assert state['alpha'] == 2.5 and state['beta'] == 8.5
  assert state['current_bid_micros'] == 850_000

  store.insert('fact_performance_daily', _fact('kw-1', 4, 1, day='2026-10-19'))
  collector.collect('111', observation_date=date(2026, 10, 19), now=NOW)
  state = store.get('bid_states', {'entity_id': 'kw-1'})
  assert state['alpha'] == 3.5 and state['beta'] == 11.5
  assert state['observations_count'] == 2


def test_collect_same_day_twice_does_not_double_count(store):
  store.insert('fact_performance_daily', _fact('kw-1', 10, 2))
  collector = ObservationCollector(store)
  collector.collect('111', now=NOW)
  again = collector.collect('111', now=NOW)
  assert again['observations_inserted'] == 0
  assert store.get('bid_states', {'entity_id': 'kw-1'})['alpha'] == 2.5


def test_orders_are_capped_at_clicks(store):
  store.insert('fact_performance_daily', _fact('kw-1', 2, 5))
  ObservationCollector(store).collect('111', now=NOW)
  state = store.get('bid_states', {'entity_id': 'kw-1'})
  assert state['alpha'] == 2.5 and state['beta'] == 0.5


def test_run_queues_step_limited_bid_change(store):
  _state(store)
  optimizer = BayesianBidOptimizer(store, rng=np.random.default_rng(7))

  result = optimizer.run('111', now=NOW)

  assert result['entities_evaluated'] == 1
  assert result['bids_changed'] == 1 and result['actions_queued'] == 1
  action = store.get('action_queue', {'profile_id': '111'})
  assert action['action_type'] == 'set_bid'
  assert action['status'] == 'queued'
  assert action['payload']['new_bid_micros'] == 1_200_000
  assert action['payload']['bid_display'] == '$1.00 -> $1.20 (+20%)'
  run = store.get('bid_optimization_runs', {'id': result['run_id']})
  assert run['status'] == 'success'


def test_rerun_same_day_does_not_duplicate_actions(store):
  _state(store)
  optimizer = BayesianBidOptimizer(store, rng=np.random.default_rng(7))
  optimizer.run('111', now=NOW)
  second = optimizer.run('111', now=NOW)
  assert second['actions_queued'] == 0
  assert store.count('action_queue') == 1


def test_dry_run_recommends_without_queueing(store):
  _state(store)
  result = BayesianBidOptimizer(store, rng=np.random.default_rng(1)).run('111', dry_run=True, now=NOW)
  assert len(result['recommendations']) == 1
  assert store.count('action_queue') == 0


def test_immature_and_protected_entities_are_skipped(store):
  _state(store, entity_id='kw-young', observations_count=3)
  _state(store, entity_id='kw-protected')
  store.insert('protected_entities', {'profile_id': '111', 'entity_type': 'keyword',
                                      'entity_id': 'kw-protected'})
  result = BayesianBidOptimizer(store, rng=np.random.default_rng(1)).run('111', now=NOW)
  assert result['entities_evaluated'] == 1
  assert result['entities_eligible'] == 0
  assert store.count('action_queue') == 0


def test_paused_profile_is_skipped(store):
  _state(store)
  store.insert('automation_governance', {'profile_id': '111', 'automation_paused': True})
  result = BayesianBidOptimizer(store).run('111', now=NOW)
  assert result['skipped']
  assert store.count('bid_optimization_runs') == 0
