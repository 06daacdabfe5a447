"""
Bayesian bid optimization
=========================

Each keyword/target carries a Beta posterior over its conversion rate
(``bid_states``). ``ObservationCollector`` folds one day of performance into
the posteriors; ``BayesianBidOptimizer`` Thompson-samples a conversion rate,
turns it into a bid at the target ACoS and queues the change.

All bid amounts are micros.
"""

import logging
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

import numpy as np
from scipy import stats

from .exceptions import StoreError
from .governance import Governance
from .models import to_micros, utcnow
from .store import Store

logger = logging.getLogger(__name__)

PRIOR_ALPHA = 0.5
PRIOR_BETA = 0.5
MIN_CHANGE_RATIO = 0.02

BID_TABLES = {
  'keyword': ('keywords', 'amazon_keyword_id'),
  'target': ('targets', 'amazon_target_id'),
  'ad_group': ('ad_groups', 'amazon_adgroup_id'),
}


@dataclass
class OptimizerConfig:
  min_observations: int = 7
  min_impressions: int = 100
  target_acos: float = 0.20
  max_bid_change_percent: float = 0.25
  min_bid_micros: int = 100_000
  max_bid_micros: int = 10_000_000
  exploration_bonus: float = 0.1
  avg_order_value_micros: int = 25_000_000

  @classmethod
  def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'OptimizerConfig':
    known = {k: v for k, v in (data or {}).items() if k in cls.__dataclass_fields__}
    return cls(**known)


def credible_interval(alpha: float, beta: float, mass: float = 0.95):
  tail = (1 - mass) / 2
  return float(stats.beta.ppf(tail, alpha, beta)), float(stats.beta.ppf(1 - tail, alpha, beta))


def posterior_std(alpha: float, beta: float) -> float:
  total = alpha + beta
  return float(np.sqrt(alpha * beta / (total ** 2 * (total + 1))))


# ============================================================================
# OBSERVATIONS
# ============================================================================

class ObservationCollector:
  """Turns daily keyword/target facts into Beta posterior updates"""

  def __init__(self, store: Store):
    self.store = store

  def _current_bids(self, profile_id: str, entity_type: str) -> Dict[str, int]:
    table, id_column = BID_TABLES[entity_type]
    return {
      str(row[id_column]): to_micros(row.get('bid') or row.get('default_bid'))
      for row in self.store.select(table, {'profile_id': profile_id})
      if row.get(id_column)
    }

  def collect(self, profile_id: str, observation_date: Optional[date] = None,
              now: Optional[datetime] = None) -> Dict[str, Any]:
    start_time = time.time()
    now = now or utcnow()
    day = (observation_date or (now - timedelta(days=1)).date()).isoformat()
    logger.info(f"=== Collecting bid observations for {profile_id} on {day} ===")

    results = {'date': day, 'observations_inserted': 0, 'states_created': 0,
               'states_updated': 0, 'entities_seen': 0}

    for entity_type in ('keyword', 'target'):
      facts = self.store.select('fact_performance_daily', {
        'profile_id': profile_id, 'entity_type': entity_type, 'date': day, 'clicks__gt': 0,
      })
      if not facts:
        continue
      bids = self._current_bids(profile_id, entity_type)
      results['entities_seen'] += len(facts)

      observations = []
      for fact in facts:
        clicks = int(fact.get('clicks') or 0)
        conversions = min(int(fact.get('orders') or 0), clicks)
        observations.append({
          'profile_id': profile_id,
          'entity_type': entity_type,
          'entity_id': str(fact['entity_id']),
          'observation_date': day,
          'campaign_id': fact.get('campaign_id'),
          'ad_group_id': fact.get('ad_group_id'),
          'bid_at_time_micros': bids.get(str(fact['entity_id'])),
          'impressions': int(fact.get('impressions') or 0),
          'clicks': clicks,
          'conversions': conversions,
          'spend_micros': to_micros(fact.get('spend')),
          'sales_micros': to_micros(fact.get('sales')),
          'reward': conversions / clicks,
          'reward_type': 'conversion_rate',
        })

      # Only rows inserted now update posteriors; repeats for the same date are ignored
      inserted = self.store.upsert(
        'bid_observations', observations,
        on_conflict='profile_id,entity_type,entity_id,observation_date', ignore_duplicates=True
      )
      results['observations_inserted'] += len(inserted)

      for observation in inserted:
        created = self._update_state(observation, now)
        results['states_created' if created else 'states_updated'] += 1

    results['execution_time_seconds'] = round(time.time() - start_time, 2)
    logger.info(f"Observations: {results['observations_inserted']} new, "
                f"{results['states_created']} states created, {results['states_updated']} updated")
    return results

  def _update_state(self, obs: Dict[str, Any], now: datetime) -> bool:
    """Conjugate Beta update; returns True when the state was created"""
    conversions = obs['conversions']
    failures = max(0, obs['clicks'] - conversions)
    key = {'profile_id': obs['profile_id'], 'entity_type': obs['entity_type'],
           'entity_id': obs['entity_id']}
    existing = self.store.get('bid_states', key)

    if existing is None:
      self.store.insert('bid_states', dict(
        key,
        campaign_id=obs.get('campaign_id'),
        ad_group_id=obs.get('ad_group_id'),
        alpha=PRIOR_ALPHA + conversions,
        beta=PRIOR_BETA + failures,
        prior_alpha=PRIOR_ALPHA,
        prior_beta=PRIOR_BETA,
        current_bid_micros=obs.get('bid_at_time_micros'),
        optimization_enabled=True,
        observations_count=1,
        total_conversions=conversions,
        total_clicks=obs['clicks'],
        total_impressions=obs['impressions'],
        total_spend_micros=obs['spend_micros'],
        total_sales_micros=obs['sales_micros'],
        last_observation_at=now,
      ))
      return True

    values = {
      'alpha': float(existing['alpha']) + conversions,
      'beta': float(existing['beta']) + failures,
      'observations_count': int(existing.get('observations_count') or 0) + 1,
      'total_conversions': int(existing.get('total_conversions') or 0) + conversions,
      'total_clicks': int(existing.get('total_clicks') or 0) + obs['clicks'],
      'total_impressions': int(existing.get('total_impressions') or 0) + obs['impressions'],
      'total_spend_micros': int(existing.get('total_spend_micros') or 0) + obs['spend_micros'],
      'total_sales_micros': int(existing.get('total_sales_micros') or 0) + obs['sales_micros'],
      'last_observation_at': now,
    }
    if obs.get('bid_at_time_micros'):
      values['current_bid_micros'] = obs['bid_at_time_micros']
    self.store.update('bid_states', values, {'id': existing['id']})
    return False


# ============================================================================
# THOMPSON SAMPLING
# ============================================================================

class BayesianBidOptimizer:
  """Thompson sampling over conversion-rate posteriors"""

  def __init__(self, store: Store, governance: Optional[Governance] = None,
               config: Optional[Dict[str, Any]] = None, rng: Optional[np.random.Generator] = None):
    self.store = store
    self.governance = governance or Governance(store)
    self.overrides = dict(config or {})
    self.rng = rng or np.random.default_rng()

  def _config(self, profile_id: str) -> OptimizerConfig:
    """Defaults, then caller overrides, with governance bounds always winning"""
    settings = self.governance.settings(profile_id)
    config = OptimizerConfig.from_dict(self.overrides)
    config.max_bid_change_percent = min(
      float(self.overrides.get('max_bid_change_percent', OptimizerConfig.max_bid_change_percent)),
      float(settings['max_bid_change_percent']) / 100,
    )
    config.min_bid_micros = int(settings['min_bid_micros'])
    config.max_bid_micros = int(settings['max_bid_micros'])
    return config

  def propose_bid(self, state: Dict[str, Any], config: OptimizerConfig,
                  avg_order_value_micros: float) -> Dict[str, Any]:
    alpha, beta = float(state['alpha']), float(state['beta'])
    sampled_cvr = float(self.rng.beta(alpha, beta))
    expected_value = sampled_cvr * avg_order_value_micros
    optimal_bid = expected_value * config.target_acos
    bonus = config.exploration_bonus * posterior_std(alpha, beta) * optimal_bid

    bid = round(optimal_bid + bonus)
    current = state.get('current_bid_micros')
    if current:
      max_step = current * config.max_bid_change_percent
      bid = max(current - max_step, min(current + max_step, bid))
    bid = int(round(max(config.min_bid_micros, min(config.max_bid_micros, bid))))

    lower, upper = credible_interval(alpha, beta)
    point = alpha / (alpha + beta)
    width = upper - lower
    confidence = 1 - width / point if point > 0 else 0.0
    if width < 0.2 * point:
      level = 'high'
    elif width < 0.5 * point:
      level = 'medium'
    else:
      level = 'low'

    return {
      'new_bid_micros': bid,
      'sampled_cvr': sampled_cvr,
      'expected_value_micros': expected_value,
      'confidence': max(0.0, min(1.0, confidence)),
      'confidence_level': level,
      'ci_lower': lower,
      'ci_upper': upper,
    }

  def run(self, profile_id: str, dry_run: bool = False,
          now: Optional[datetime] = None) -> Dict[str, Any]:
    start_time = time.time()
    now = now or utcnow()
    logger.info(f"=== Bayesian bid optimization for {profile_id} (dry_run={dry_run}) ===")

    paused, reason = self.governance.is_automation_paused(profile_id)
    if paused:
      logger.info(f"Profile {profile_id} automation is paused: {reason}")
      return {'profile_id': profile_id, 'skipped': True, 'reason': reason,
              'execution_time_seconds': round(time.time() - start_time, 2)}

    config = self._config(profile_id)
    run = self.store.insert('bid_optimization_runs', {
      'profile_id': profile_id, 'status': 'running', 'started_at': now, 'config': config.__dict__,
    })[0]

    results = {'run_id': run['id'], 'profile_id': profile_id, 'entities_evaluated': 0,
               'entities_eligible': 0, 'bids_sampled': 0, 'bids_changed': 0,
               'actions_queued': 0, 'recommendations': []}
    try:
      self._optimize(profile_id, config, dry_run, now, results)
    except StoreError as e:
      logger.error(f"Bid optimization failed for {profile_id}: {e}")
      self.store.update('bid_optimization_runs', {
        'status': 'error', 'finished_at': utcnow(), 'error': str(e),
      }, {'id': run['id']})
      results['error'] = str(e)
      results['execution_time_seconds'] = round(time.time() - start_time, 2)
      return results

    results['execution_time_seconds'] = round(time.time() - start_time, 2)
    self.store.update('bid_optimization_runs', {
      'status': 'success',
      'finished_at': utcnow(),
      'entities_evaluated': results['entities_evaluated'],
      'entities_eligible': results['entities_eligible'],
      'bids_sampled': results['bids_sampled'],
      'bids_changed': results['bids_changed'],
      'actions_queued': results['actions_queued'],
      'summary': {'avg_order_value_micros': results.get('avg_order_value_micros'),
                  'dry_run': dry_run, 'duration_seconds': results['execution_time_seconds']},
    }, {'id': run['id']})

    logger.info(f"Bid optimization complete: {results['bids_changed']} changes, "
                f"{results['actions_queued']} queued")
    return results

  def _optimize(self, profile_id: str, config: OptimizerConfig, dry_run: bool, now: datetime,
                results: Dict[str, Any]) -> None:
    states = [s for s in self.store.select('bid_states', {
      'profile_id': profile_id,
      'observations_count__gte': config.min_observations,
      'total_impressions__gte': config.min_impressions,
    }) if s.get('optimization_enabled', True)]
    results['entities_evaluated'] = len(states)
    logger.info(f"Found {len(states)} eligible entities")
    if not states:
      return

    avg_order_value = float(config.avg_order_value_micros)
    total_conversions = sum(int(s.get('total_conversions') or 0) for s in states)
    if total_conversions > 0:
      avg_order_value = sum(int(s.get('total_sales_micros') or 0) for s in states) / total_conversions
    results['avg_order_value_micros'] = avg_order_value

    actions: List[Dict[str, Any]] = []
    today = now.date().isoformat()
    for state in states:
      entity_type = state['entity_type']
      protected, reason = self.governance.is_entity_protected(profile_id, entity_type, state['entity_id'])
      if protected:
        logger.info(f"Skipping protected {entity_type} {state['entity_id']}: {reason}")
        continue
      results['entities_eligible'] += 1

      proposal = self.propose_bid(state, config, avg_order_value)
      guarded = self.governance.apply_bid_guardrails(profile_id, state.get('current_bid_micros'),
                                                     proposal['new_bid_micros'])
      if guarded.was_adjusted:
        logger.debug(f"Bid adjusted for {state['entity_id']}: {guarded.reason}")
      new_bid = guarded.bid_micros
      results['bids_sampled'] += 1

      self.store.update('bid_states', {
        'last_sampled_bid_micros': new_bid,
        'confidence_lower': proposal['ci_lower'],
        'confidence_upper': proposal['ci_upper'],
        'credible_interval_width': proposal['ci_upper'] - proposal['ci_lower'],
        'confidence_level': proposal['confidence_level'],
        'last_optimized_at': now,
      }, {'id': state['id']})

      current = int(state.get('current_bid_micros') or new_bid)
      change = abs(new_bid - current) / current if current else 0.0
      if change <= MIN_CHANGE_RATIO:
        continue

      results['bids_changed'] += 1
      if new_bid > current:
        why = f"CVR improved to {proposal['sampled_cvr'] * 100:.1f}%"
      else:
        why = f"Optimizing for {config.target_acos * 100:.0f}% target ACOS"
      sign = '+' if new_bid > current else '-'
      recommendation = {
        'entity_type': entity_type,
        'entity_id': state['entity_id'],
        'campaign_id': state.get('campaign_id'),
        'ad_group_id': state.get('ad_group_id'),
        'current_bid_micros': current,
        'new_bid_micros': new_bid,
        'change_percent': change * 100,
        'sampled_cvr': proposal['sampled_cvr'],
        'expected_value_micros': proposal['expected_value_micros'],
        'confidence': proposal['confidence'],
        'confidence_level': proposal['confidence_level'],
        'reason': why,
      }
      results['recommendations'].append(recommendation)

      if not dry_run:
        actions.append({
          'profile_id': profile_id,
          'action_type': 'set_adgroup_bid' if entity_type == 'ad_group' else 'set_bid',
          'idempotency_key': f"bid_opt_{profile_id}_{entity_type}_{state['entity_id']}_{today}",
          'status': 'queued',
          'rule_id': None,
          'payload': dict(
            recommendation,
            optimization_source='bayesian_thompson_sampling',
            bid_display=f"${current / 1e6:.2f} -> ${new_bid / 1e6:.2f} ({sign}{change * 100:.0f}%)",
          ),
        })

    if actions:
      queued = self.store.upsert('action_queue', actions, on_conflict='idempotency_key',
                                 ignore_duplicates=True)
      results['actions_queued'] = len(queued)
