"""
Automation rules engine
=======================

Evaluates enabled ``automation_rules`` against synced facts. Every rule can
raise alerts; rules in ``suggestion`` or ``auto`` mode also enqueue actions
(``suggested`` or ``queued``) for the action worker.
"""

import base64
import hashlib
import logging
import re
import time
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np

from .exceptions import StoreError
from .governance import Governance
from .models import from_micros, utcnow
from .store import Store

logger = logging.getLogger(__name__)

# Per-rule failures; one broken rule never stops the rest
RULE_ERRORS = (StoreError, ValueError, TypeError, KeyError)

PLAN_RULE_TYPES = {
  'free': {'budget_depletion', 'spend_spike'},
  'starter': {'budget_depletion', 'spend_spike', 'st_harvest', 'st_prune'},
}
ASIN_PATTERN = re.compile(r'^b0[a-z0-9]{8}$', re.IGNORECASE)

RuleOutput = Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]


def idempotency_key(profile_id: str, action_type: str, entity_id: str, day: str) -> str:
  """Stable 32-character key for one action on one entity per day"""
  digest = hashlib.sha256(f"{profile_id}:{action_type}:{entity_id}:{day}".encode('utf-8')).digest()
  return re.sub(r'[^a-zA-Z0-9]', '', base64.b64encode(digest).decode('ascii'))[:32]


def plan_allows(plan: Optional[str], rule_type: str) -> bool:
  plan = (plan or 'free').lower()
  if plan == 'pro':
    return True
  return rule_type in PLAN_RULE_TYPES.get(plan, set())


class RulesEngine:
  """Runs every enabled rule; failures are isolated per rule"""

  def __init__(self, store: Store, governance: Optional[Governance] = None):
    self.store = store
    self.governance = governance or Governance(store)
    self.evaluators: Dict[str, Callable[[Dict[str, Any], datetime], RuleOutput]] = {
      'budget_depletion': self.evaluate_budget_depletion,
      'spend_spike': self.evaluate_spend_spike,
      'st_harvest': self.evaluate_search_term_harvest,
      'st_prune': self.evaluate_search_term_prune,
    }

  # ==========================================================================
  # ENTITLEMENTS / THROTTLE
  # ==========================================================================

  def user_plan(self, user_id: str) -> str:
    row = self.store.get('user_subscriptions', {'user_id': user_id}) if user_id else None
    return (row or {}).get('plan') or 'free'

  def is_throttled(self, rule: Dict[str, Any], now: datetime) -> bool:
    throttle = rule.get('throttle') or {}
    if not throttle:
      return False
    max_actions = int(throttle.get('maxActionsPerDay', 100))
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    today = self.store.count('action_queue', {'rule_id': rule['id'], 'created_at__gte': day_start})
    if today >= max_actions:
      logger.info(f"Rule {rule['id']} exceeded daily action limit ({max_actions})")
      return True
    return False

  # ==========================================================================
  # RUNNER
  # ==========================================================================

  def run(self, profile_id: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    start_time = time.time()
    now = now or utcnow()
    logger.info("=== Running automation rules ===")

    filters: Dict[str, Any] = {'enabled': True}
    if profile_id:
      filters['profile_id'] = profile_id
    rules = self.store.select('automation_rules', filters)
    logger.info(f"Found {len(rules)} enabled rules")

    results = {'processed_rules': 0, 'total_alerts': 0, 'total_actions': 0,
               'skipped_rules': 0, 'errors': []}

    for rule in rules:
      rule_type = rule.get('rule_type')
      try:
        if rule_type not in self.evaluators:
          logger.warning(f"Unknown rule type: {rule_type}")
          results['skipped_rules'] += 1
          continue
        if not plan_allows(self.user_plan(rule.get('user_id')), rule_type):
          logger.info(f"User {rule.get('user_id')} lacks entitlement for rule type {rule_type}")
          results['skipped_rules'] += 1
          continue
        if self.is_throttled(rule, now):
          results['skipped_rules'] += 1
          continue

        alerts, actions = self.run_rule(rule, now)
        results['processed_rules'] += 1
        results['total_alerts'] += alerts
        results['total_actions'] += actions
      except RULE_ERRORS as e:
        logger.error(f"Error processing rule {rule.get('id')}: {e}")
        results['errors'].append({'rule_id': rule.get('id'), 'error': str(e)})

    results['execution_time_seconds'] = round(time.time() - start_time, 2)
    logger.info(f"Rules complete: {results['processed_rules']} rules, {results['total_alerts']} alerts, "
                f"{results['total_actions']} actions")
    return results

  def run_rule(self, rule: Dict[str, Any], now: datetime) -> Tuple[int, int]:
    """Evaluate one rule and persist its alerts and actions"""
    run = self.store.insert('rule_runs', {
      'rule_id': rule['id'], 'profile_id': rule['profile_id'], 'status': 'running', 'started_at': now,
    })[0]

    try:
      alerts, queued = self._evaluate(rule, now)
    except RULE_ERRORS as e:
      self.store.update('rule_runs', {'status': 'error', 'finished_at': utcnow(), 'error': str(e)},
                        {'id': run['id']})
      raise

    self.store.update('rule_runs', {
      'status': 'success',
      'finished_at': utcnow(),
      'evaluated': 1,
      'alerts_created': alerts,
      'actions_enqueued': queued,
    }, {'id': run['id']})
    logger.info(f"Rule {rule['id']} ({rule['rule_type']}) processed: {alerts} alerts, {queued} actions")
    return alerts, queued

  def _evaluate(self, rule: Dict[str, Any], now: datetime) -> Tuple[int, int]:
    alerts, actions = self.evaluators[rule['rule_type']](rule, now)
    if alerts:
      self.store.insert('alerts', [dict(a, rule_id=rule['id'], profile_id=rule['profile_id'],
                                        state='new') for a in alerts])

    queued = 0
    mode = rule.get('mode') or 'dry_run'
    if actions and mode != 'dry_run':
      rows = []
      for action in actions:
        payload = action['payload']
        check = self.governance.check_action(rule['profile_id'], payload['entity_type'],
                                             payload['entity_id'], now=now)
        if not check.allowed:
          logger.info(f"Action {action['action_type']} on {payload['entity_id']} blocked: {check.reason}")
          continue
        key_entity = payload['entity_id']
        if payload.get('keyword_text'):
          key_entity = f"{key_entity}:{payload['keyword_text']}"
        rows.append(dict(
          action,
          rule_id=rule['id'],
          profile_id=rule['profile_id'],
          status='queued' if mode == 'auto' else 'suggested',
          idempotency_key=idempotency_key(rule['profile_id'], action['action_type'], key_entity,
                                          now.date().isoformat()),
        ))
      if rows:
        queued = len(self.store.upsert('action_queue', rows, on_conflict='idempotency_key',
                                       ignore_duplicates=True))
    return len(alerts), queued

  # ==========================================================================
  # EVALUATORS
  # ==========================================================================

  def evaluate_budget_depletion(self, rule: Dict[str, Any], now: datetime) -> RuleOutput:
    params = rule.get('params') or {}
    threshold = float(params.get('percentThreshold', 80))
    rows = self.store.select('fact_budget_usage', {
      'profile_id': rule['profile_id'], 'date': now.date().isoformat(),
    }, order_by='captured_at', desc=True)

    latest: Dict[str, Dict[str, Any]] = {}
    for row in rows:
      latest.setdefault(str(row['campaign_id']), row)

    alerts, actions = [], []
    for campaign_id, row in latest.items():
      budget = float(row.get('budget') or 0)
      usage = float(row.get('spend') or 0) / budget * 100 if budget > 0 else 0.0
      if usage < threshold:
        continue
      alerts.append({
        'entity_type': 'campaign',
        'entity_id': campaign_id,
        'level': 'critical',
        'title': 'Budget Depletion Alert',
        'message': f"Campaign {campaign_id} has used {usage:.1f}% of daily budget",
        'data': {'usage_percent': round(usage, 2), 'spend': row.get('spend'), 'budget': budget,
                 'threshold': threshold},
      })
      actions.append({
        'action_type': 'pause_campaign',
        'payload': {'entity_type': 'campaign', 'entity_id': campaign_id, 'campaign_id': campaign_id,
                    'reason': 'budget_depletion', 'usage_percent': round(usage, 2)},
      })
    return alerts, actions

  def evaluate_spend_spike(self, rule: Dict[str, Any], now: datetime) -> RuleOutput:
    params = rule.get('params') or {}
    lookback = int(params.get('lookbackDays', 7))
    multiplier = float(params.get('stdevMultiplier', 2.0))
    min_spend = float(params.get('minSpend', 5.0))
    today = now.date()

    rows = self.store.select('fact_performance_daily', {
      'profile_id': rule['profile_id'],
      'entity_type': 'campaign',
      'date__gte': (today - timedelta(days=lookback + 1)).isoformat(),
      'date__lte': today.isoformat(),
    })
    names = {c['amazon_campaign_id']: c.get('name')
             for c in self.store.select('campaigns', {'profile_id': rule['profile_id']})}

    history: Dict[str, List[float]] = defaultdict(list)
    today_spend: Dict[str, float] = {}
    for row in rows:
      spend = float(row.get('spend') or 0)
      if str(row['date'])[:10] == today.isoformat():
        today_spend[str(row['entity_id'])] = spend
      else:
        history[str(row['entity_id'])].append(spend)

    alerts = []
    for campaign_id, spend in today_spend.items():
      baseline = history.get(campaign_id, [])
      if len(baseline) < 3 or spend < min_spend:
        continue
      mean = float(np.mean(baseline))
      threshold = mean + multiplier * float(np.std(baseline))
      if spend <= threshold or mean <= 0:
        continue
      alerts.append({
        'entity_type': 'campaign',
        'entity_id': campaign_id,
        'level': 'warn',
        'title': 'Spend Spike Detected',
        'message': f"Campaign \"{names.get(campaign_id) or campaign_id}\" spend is "
                   f"{(spend / mean - 1) * 100:.1f}% above baseline",
        'data': {'today_spend': spend, 'baseline_mean': round(mean, 2), 'threshold': round(threshold, 2),
                 'spike_multiplier': round(spend / mean, 2)},
      })
    return alerts, []

  def _search_terms(self, profile_id: str, window_days: int, now: datetime) -> List[Dict[str, Any]]:
    """Search terms aggregated per (campaign, ad group, term) over the window"""
    since = (now.date() - timedelta(days=window_days)).isoformat()
    rows = self.store.select('fact_search_term_daily', {'profile_id': profile_id, 'date__gte': since})

    totals: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
    for row in rows:
      term = (row.get('search_term') or '').strip().lower()
      if not term:
        continue
      key = (str(row.get('campaign_id')), str(row.get('ad_group_id')), term)
      entry = totals.setdefault(key, {'campaign_id': key[0], 'ad_group_id': key[1], 'search_term': term,
                                      'clicks': 0, 'cost_micros': 0, 'conversions': 0, 'sales_micros': 0})
      entry['clicks'] += int(row.get('clicks') or 0)
      entry['cost_micros'] += int(row.get('cost_micros') or 0)
      entry['conversions'] += int(row.get('attributed_conversions_7d') or 0)
      entry['sales_micros'] += int(row.get('attributed_sales_7d_micros') or 0)
    return list(totals.values())

  def evaluate_search_term_harvest(self, rule: Dict[str, Any], now: datetime) -> RuleOutput:
    params = rule.get('params') or {}
    min_convs = int(params.get('minConvs', 2))
    max_acos = float(params.get('maxAcos', 0.35))
    profile_id = rule['profile_id']

    existing = {
      (str(k.get('amazon_adgroup_id')), (k.get('keyword_text') or '').lower())
      for k in self.store.select('keywords', {'profile_id': profile_id})
    }

    alerts, actions = [], []
    for term in self._search_terms(profile_id, int(params.get('windowDays', 14)), now):
      if term['conversions'] < min_convs or term['sales_micros'] <= 0:
        continue
      acos = term['cost_micros'] / term['sales_micros']
      if acos > max_acos:
        continue
      if ASIN_PATTERN.match(term['search_term']) or (term['ad_group_id'], term['search_term']) in existing:
        continue

      cpc_micros = term['cost_micros'] // term['clicks'] if term['clicks'] else 0
      entity_id = f"{term['ad_group_id']}:{term['search_term']}"
      alerts.append({
        'entity_type': 'search_term',
        'entity_id': entity_id,
        'level': rule.get('severity') or 'info',
        'title': 'Search Term Harvest Candidate',
        'message': f"\"{term['search_term']}\" converted {term['conversions']} times at "
                   f"{acos * 100:.1f}% ACOS",
        'data': {'clicks': term['clicks'], 'conversions': term['conversions'], 'acos': round(acos, 4),
                 'spend': from_micros(term['cost_micros']), 'sales': from_micros(term['sales_micros'])},
      })
      actions.append({
        'action_type': 'create_keyword',
        'payload': {'entity_type': 'ad_group', 'entity_id': term['ad_group_id'],
                    'campaign_id': term['campaign_id'], 'ad_group_id': term['ad_group_id'],
                    'keyword_text': term['search_term'], 'match_type': 'exact',
                    'bid_micros': cpc_micros or None, 'source': 'st_harvest'},
      })
    return alerts, actions

  def evaluate_search_term_prune(self, rule: Dict[str, Any], now: datetime) -> RuleOutput:
    params = rule.get('params') or {}
    min_clicks = int(params.get('minClicks', 20))
    max_convs = int(params.get('maxConvs', 0))
    ad_group_scope = (params.get('negateScope') or 'ad_group') == 'ad_group'

    alerts, actions = [], []
    for term in self._search_terms(rule['profile_id'], int(params.get('windowDays', 14)), now):
      if term['clicks'] < min_clicks or term['conversions'] > max_convs:
        continue
      entity_id = f"{term['ad_group_id']}:{term['search_term']}"
      alerts.append({
        'entity_type': 'search_term',
        'entity_id': entity_id,
        'level': rule.get('severity') or 'warn',
        'title': 'Search Term Prune Candidate',
        'message': f"\"{term['search_term']}\" has {term['clicks']} clicks and "
                   f"{term['conversions']} conversions",
        'data': {'clicks': term['clicks'], 'conversions': term['conversions'],
                 'spend': from_micros(term['cost_micros'])},
      })
      payload = {'entity_type': 'campaign', 'entity_id': term['campaign_id'],
                 'campaign_id': term['campaign_id'], 'keyword_text': term['search_term'],
                 'match_type': 'negative_exact', 'source': 'st_prune'}
      if ad_group_scope:
        payload.update(entity_type='ad_group', entity_id=term['ad_group_id'],
                       ad_group_id=term['ad_group_id'])
      actions.append({'action_type': 'negative_keyword', 'payload': payload})
    return alerts, actions
