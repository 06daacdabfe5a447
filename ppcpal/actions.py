"""
Action execution
================

``ActionWorker`` drains ``action_queue`` into Amazon Ads API calls,
``revert_action`` undoes an applied change and ``OutcomeCollector`` scores
applied actions once their after-period has accumulated.

Payload money values are micros; the API client takes dollars.
"""

import logging
import time
import traceback
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from .api import AmazonAdsAPI
from .audit import AuditLogger
from .auth import ConnectionService
from .exceptions import AmazonApiError, AuthenticationError, PPCPalError, StoreError
from .governance import Governance
from .models import ApiResponse, from_micros, to_micros, utcnow
from .store import Store

logger = logging.getLogger(__name__)

CLIENT_ERROR = 'Failed to establish Amazon API connection - token may be expired'
STARTER_AUTO_ACTIONS = {'create_keyword', 'negative_keyword', 'pause_keyword', 'enable_keyword'}
NOT_REVERTIBLE = {'create_keyword', 'negative_keyword'}

# entity type -> (table, amazon id column)
ENTITY_TABLES = {
  'campaign': ('campaigns', 'amazon_campaign_id'),
  'ad_group': ('ad_groups', 'amazon_adgroup_id'),
  'keyword': ('keywords', 'amazon_keyword_id'),
  'target': ('targets', 'amazon_target_id'),
}
METRIC_COLUMNS = ('spend', 'sales', 'orders', 'clicks', 'impressions', 'acos', 'roas')


def resolve_entity(payload: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
  """(entity_type, amazon id) an action payload refers to"""
  entity_type = payload.get('entity_type') or payload.get('entityType')
  entity_id = payload.get('entity_id') or payload.get('entityId')
  if entity_type and entity_id:
    return ('ad_group' if entity_type == 'adgroup' else entity_type), str(entity_id)
  for entity_type in ('keyword', 'target', 'ad_group', 'campaign'):
    if payload.get(f'{entity_type}_id'):
      return entity_type, str(payload[f'{entity_type}_id'])
  return None, None


def _failure(message: str) -> ApiResponse:
  return ApiResponse(success=False, error=message)


def _bid_micros(payload: Dict[str, Any]) -> Optional[int]:
  return payload.get('bid_micros') or payload.get('new_bid_micros')


def _entity_snapshot(store: Store, entity_type: Optional[str], entity_id: Optional[str]) -> Dict[str, Any]:
  if entity_type not in ENTITY_TABLES or not entity_id:
    return {}
  table, id_column = ENTITY_TABLES[entity_type]
  return store.get(table, {id_column: entity_id}) or {}


def entity_metrics(store: Store, entity_type: Optional[str], entity_id: Optional[str]) -> Dict[str, float]:
  row = _entity_snapshot(store, entity_type, entity_id)
  return {column: float(row.get(column) or 0) for column in METRIC_COLUMNS}


# ============================================================================
# DISPATCH
# ============================================================================

def _set_state(api: AmazonAdsAPI, entity_type: str, entity_id: str, state: str) -> ApiResponse:
  if entity_type == 'campaign':
    return api.update_campaign_state(entity_id, state)
  if entity_type == 'ad_group':
    return api.update_ad_group_state(entity_id, state)
  if entity_type == 'keyword':
    return api.update_keyword_state(entity_id, state)
  if entity_type == 'target':
    return api.update_target_state(entity_id, state)
  return _failure(f"Unsupported entity type: {entity_type}")


def _set_bid(api: AmazonAdsAPI, entity_type: str, entity_id: str, bid_micros: int) -> ApiResponse:
  bid = from_micros(bid_micros)
  if entity_type == 'keyword':
    return api.update_keyword_bid(entity_id, bid)
  if entity_type == 'target':
    return api.update_target_bid(entity_id, bid)
  if entity_type == 'ad_group':
    return api.update_ad_group_bid(entity_id, bid)
  return _failure(f"Bids cannot be set on {entity_type}")


def _state_handler(entity_type: str, state: str) -> Callable[[AmazonAdsAPI, Dict], ApiResponse]:
  def handler(api: AmazonAdsAPI, payload: Dict[str, Any]) -> ApiResponse:
    entity_id = payload.get(f'{entity_type}_id')
    if not entity_id:
      return _failure(f"Missing {entity_type}_id")
    logger.info(f"Setting {entity_type} {entity_id} to {state}")
    return _set_state(api, entity_type, str(entity_id), state)
  return handler


def _entity_state_handler(state: str) -> Callable[[AmazonAdsAPI, Dict], ApiResponse]:
  def handler(api: AmazonAdsAPI, payload: Dict[str, Any]) -> ApiResponse:
    entity_type, entity_id = resolve_entity(payload)
    if not entity_id:
      return _failure('Missing entity id')
    logger.info(f"Dayparting: setting {entity_type} {entity_id} to {state}")
    return _set_state(api, entity_type, entity_id, state)
  return handler


def _update_campaign_budget(api: AmazonAdsAPI, payload: Dict[str, Any]) -> ApiResponse:
  if not payload.get('campaign_id') or not payload.get('daily_budget_micros'):
    return _failure('Missing campaign_id or daily_budget_micros')
  budget = from_micros(payload['daily_budget_micros'])
  logger.info(f"Updating campaign {payload['campaign_id']} budget to ${budget:.2f}")
  return api.update_campaign_budget(payload['campaign_id'], budget)


def _set_placement_adjust(api: AmazonAdsAPI, payload: Dict[str, Any]) -> ApiResponse:
  if not payload.get('campaign_id'):
    return _failure('Missing campaign_id')
  placements = {}
  if payload.get('placement_top') is not None:
    placements['PLACEMENT_TOP'] = payload['placement_top']
  if payload.get('placement_product_page') is not None:
    placements['PLACEMENT_PRODUCT_PAGE'] = payload['placement_product_page']
  if not placements:
    return _failure('No placement adjustments specified')
  return api.update_campaign_bidding(payload['campaign_id'], placements=placements)


def _create_keyword(api: AmazonAdsAPI, payload: Dict[str, Any]) -> ApiResponse:
  if not (payload.get('ad_group_id') and payload.get('keyword_text') and payload.get('match_type')):
    return _failure('Missing required fields: ad_group_id, keyword_text, match_type')
  bid = from_micros(payload['bid_micros']) if payload.get('bid_micros') else None
  logger.info(f"Creating keyword \"{payload['keyword_text']}\" in ad group {payload['ad_group_id']}")
  return api.create_keyword(payload.get('campaign_id'), payload['ad_group_id'], payload['keyword_text'],
                            payload['match_type'], bid)


def _negative_keyword(api: AmazonAdsAPI, payload: Dict[str, Any]) -> ApiResponse:
  if not (payload.get('keyword_text') and payload.get('match_type')):
    return _failure('Missing required fields: keyword_text, match_type')
  if payload.get('ad_group_id') and payload.get('campaign_id'):
    return api.create_ad_group_negative_keyword(payload['campaign_id'], payload['ad_group_id'],
                                                payload['keyword_text'], payload['match_type'])
  if payload.get('campaign_id'):
    return api.create_campaign_negative_keyword(payload['campaign_id'], payload['keyword_text'],
                                                payload['match_type'])
  return _failure('Missing campaign_id for negative keyword')


def _set_entity_bid(api: AmazonAdsAPI, payload: Dict[str, Any]) -> ApiResponse:
  entity_type, entity_id = resolve_entity(payload)
  bid_micros = _bid_micros(payload)
  if not entity_id or not bid_micros:
    return _failure('Missing entity id or bid_micros')
  logger.info(f"Setting {entity_type} {entity_id} bid to ${from_micros(bid_micros):.2f}")
  return _set_bid(api, entity_type, entity_id, bid_micros)


def _set_ad_group_bid(api: AmazonAdsAPI, payload: Dict[str, Any]) -> ApiResponse:
  ad_group_id = payload.get('ad_group_id')
  if payload.get('entity_type') in ('ad_group', 'adgroup'):
    ad_group_id = payload.get('entity_id') or ad_group_id
  bid_micros = _bid_micros(payload)
  if not ad_group_id or not bid_micros:
    return _failure('Missing ad_group_id or bid_micros')
  return _set_bid(api, 'ad_group', str(ad_group_id), bid_micros)


ACTION_HANDLERS: Dict[str, Callable[[AmazonAdsAPI, Dict[str, Any]], ApiResponse]] = {
  'pause_campaign': _state_handler('campaign', 'paused'),
  'enable_campaign': _state_handler('campaign', 'enabled'),
  'update_campaign_budget': _update_campaign_budget,
  'set_placement_adjust': _set_placement_adjust,
  'create_keyword': _create_keyword,
  'negative_keyword': _negative_keyword,
  'set_bid': _set_entity_bid,
  'set_keyword_bid': _set_entity_bid,
  'set_adgroup_bid': _set_ad_group_bid,
  'update_ad_group_bid': _set_ad_group_bid,
  'pause_keyword': _state_handler('keyword', 'paused'),
  'enable_keyword': _state_handler('keyword', 'enabled'),
  'pause_target': _state_handler('target', 'paused'),
  'enable_target': _state_handler('target', 'enabled'),
  'pause_ad_group': _state_handler('ad_group', 'paused'),
  'enable_ad_group': _state_handler('ad_group', 'enabled'),
  'pause_entity': _entity_state_handler('paused'),
  'enable_entity': _entity_state_handler('enabled'),
}


def execute_action(api: AmazonAdsAPI, action: Dict[str, Any]) -> ApiResponse:
  handler = ACTION_HANDLERS.get(action.get('action_type'))
  if handler is None:
    return _failure(f"Unknown action type: {action.get('action_type')}")
  return handler(api, action.get('payload') or {})


# ============================================================================
# WORKER
# ============================================================================

class ActionWorker:
  """Applies queued actions profile by profile"""

  def __init__(self, store: Store, connections: ConnectionService, governance: Optional[Governance] = None,
               audit: Optional[AuditLogger] = None, dry_run: bool = False,
               delay_seconds: float = 0.1, sleep: Callable[[float], None] = time.sleep):
    self.store = store
    self.connections = connections
    self.governance = governance or Governance(store)
    self.audit = audit or AuditLogger()
    self.dry_run = dry_run
    self.delay_seconds = delay_seconds
    self.sleep = sleep

  def _plan_for_profile(self, profile_id: str) -> str:
    connection = self.store.get('amazon_connections', {'profile_id': profile_id})
    user_id = (connection or {}).get('user_id')
    row = self.store.get('user_subscriptions', {'user_id': user_id}) if user_id else None
    return (row or {}).get('plan') or 'free'

  def can_auto_apply(self, action: Dict[str, Any]) -> bool:
    """Rule mode and the owner's plan decide whether an action may be applied unattended"""
    plan_user = None
    if action.get('rule_id'):
      rule = self.store.get('automation_rules', {'id': action['rule_id']})
      if not rule or rule.get('mode') in ('dry_run', 'suggestion'):
        return False
      plan_user = rule.get('user_id')

    if plan_user:
      row = self.store.get('user_subscriptions', {'user_id': plan_user})
      plan = (row or {}).get('plan') or 'free'
    else:
      plan = self._plan_for_profile(action['profile_id'])

    if plan == 'pro':
      return True
    if plan == 'starter':
      return action.get('action_type') in STARTER_AUTO_ACTIONS
    return False

  def _before_state(self, action: Dict[str, Any]) -> Dict[str, Any]:
    """Values a revert needs, captured just before applying"""
    payload = action.get('payload') or {}
    entity_type, entity_id = resolve_entity(payload)
    row = _entity_snapshot(self.store, entity_type, entity_id)
    before: Dict[str, Any] = {'entity_type': entity_type, 'entity_id': entity_id}
    if row.get('status'):
      before['state'] = row['status']
    if payload.get('current_bid_micros'):
      before['bid_micros'] = int(payload['current_bid_micros'])
    elif row.get('bid') or row.get('default_bid'):
      before['bid_micros'] = to_micros(row.get('bid') or row.get('default_bid'))
    if row.get('daily_budget'):
      before['daily_budget_micros'] = to_micros(row['daily_budget'])
    return before

  def _finish(self, action: Dict[str, Any], values: Dict[str, Any]) -> None:
    values.setdefault('applied_at', utcnow())
    self.store.update('action_queue', values, {'id': action['id']})

  def process(self, batch_size: int = 25, profile_id: Optional[str] = None) -> Dict[str, Any]:
    start_time = time.time()
    logger.info(f"=== Processing queued actions (dry_run={self.dry_run}) ===")

    filters: Dict[str, Any] = {'status': 'queued'}
    if profile_id:
      filters['profile_id'] = profile_id
    actions = self.store.select('action_queue', filters, order_by='created_at', limit=batch_size)
    logger.info(f"Found {len(actions)} queued actions")

    results = {'processed_actions': 0, 'successful_actions': 0, 'failed_actions': 0,
               'skipped_actions': 0, 'errors': []}

    by_profile: Dict[str, List[Dict[str, Any]]] = OrderedDict()
    for action in actions:
      by_profile.setdefault(action['profile_id'], []).append(action)

    try:
      self._process_profiles(by_profile, results)
    finally:
      try:
        self.audit.save()
      except OSError as e:
        logger.error(f"Failed to save audit trail: {e}")

    results['execution_time_seconds'] = round(time.time() - start_time, 2)
    logger.info(f"Actions complete: {results['successful_actions']} applied, {results['failed_actions']} failed, "
                f"{results['skipped_actions']} skipped")
    return results

  def _process_profiles(self, by_profile: Dict[str, List[Dict[str, Any]]], results: Dict[str, Any]) -> None:
    for profile, profile_actions in by_profile.items():
      try:
        api = self.connections.api_for_profile(profile)
      except (AuthenticationError, AmazonApiError) as e:
        logger.error(f"Failed to create API client for profile {profile}: {e}")
        for action in profile_actions:
          self._finish(action, {'status': 'failed', 'error': CLIENT_ERROR})
          results['failed_actions'] += 1
          results['errors'].append({'action_id': action['id'], 'error': CLIENT_ERROR})
        continue

      for action in profile_actions:
        try:
          self._process_one(api, action, results)
        except Exception as e:
          logger.error(f"Action {action['id']} failed with unexpected error: {e}")
          logger.error(traceback.format_exc())
          self._fail_unexpected(action, e, results)
        if self.delay_seconds:
          self.sleep(self.delay_seconds)

  def _fail_unexpected(self, action: Dict[str, Any], error: Exception, results: Dict[str, Any]) -> None:
    message = f"{type(error).__name__}: {error}"
    results['failed_actions'] += 1
    results['errors'].append({'action_id': action['id'], 'error': message})
    try:
      self._finish(action, {'status': 'failed', 'error': message})
    except StoreError as e:
      logger.error(f"Could not mark action {action['id']} failed: {e}")

  def _process_one(self, api: AmazonAdsAPI, action: Dict[str, Any], results: Dict[str, Any]) -> None:
    payload = action.get('payload') or {}
    entity_type, entity_id = resolve_entity(payload)

    if not self.can_auto_apply(action):
      logger.info(f"Action {action['id']} skipped - no auto-apply permission")
      self._finish(action, {'status': 'skipped',
                            'error': 'Auto-apply not permitted for this plan/rule combination'})
      results['skipped_actions'] += 1
      return

    check = self.governance.check_action(action['profile_id'], entity_type or 'campaign', entity_id or '')
    if not check.allowed:
      logger.info(f"Action {action['id']} skipped by governance: {check.reason}")
      self._finish(action, {'status': 'skipped', 'error': check.reason})
      results['skipped_actions'] += 1
      return

    before = self._before_state(action)
    if self.dry_run:
      self.audit.log(action['profile_id'], action['action_type'], entity_type or '', entity_id or '',
                     before.get('bid_micros') or before.get('state'), _bid_micros(payload),
                     payload.get('reason') or 'queued action', dry_run=True)
      results['processed_actions'] += 1
      return

    try:
      response = execute_action(api, action)
    except AmazonApiError as e:
      response = ApiResponse(success=False, error=str(e), status_code=e.status_code, request_id=e.request_id)
    except PPCPalError as e:
      code = getattr(e, 'code', None) or type(e).__name__
      response = ApiResponse(success=False, error=f"{code}: {e}")

    results['processed_actions'] += 1
    values = {
      'amazon_request_id': response.request_id,
      'amazon_api_response': response.data,
      'before_state': before,
    }
    if response.success:
      values['status'] = 'applied'
      results['successful_actions'] += 1
      logger.info(f"Action {action['id']} applied successfully")
    else:
      values.update(status='failed', error=response.error)
      results['failed_actions'] += 1
      results['errors'].append({'action_id': action['id'], 'error': response.error})
      logger.warning(f"Action {action['id']} failed: {response.error}")

    self._finish(action, values)
    self.audit.log(action['profile_id'], action['action_type'], entity_type or '', entity_id or '',
                   before.get('bid_micros') or before.get('state'), _bid_micros(payload),
                   payload.get('reason') or values['status'])
    if response.success:
      self._open_outcome(action, entity_type, entity_id)

  def _open_outcome(self, action: Dict[str, Any], entity_type: Optional[str], entity_id: Optional[str]) -> None:
    try:
      self.store.insert('action_outcomes', {
        'action_id': action['id'],
        'profile_id': action['profile_id'],
        'action_type': action['action_type'],
        'entity_type': entity_type,
        'entity_id': entity_id,
        'before_metrics': entity_metrics(self.store, entity_type, entity_id),
        'outcome_status': 'pending',
        'applied_at': utcnow(),
      })
    except StoreError as e:
      logger.warning(f"Could not open outcome for action {action['id']}: {e}")


# ============================================================================
# REVERT
# ============================================================================

def _revert_call(api: AmazonAdsAPI, action: Dict[str, Any]) -> ApiResponse:
  action_type = action['action_type']
  payload = action.get('payload') or {}
  before = action.get('before_state') or {}
  entity_type, entity_id = resolve_entity(payload)

  if action_type in NOT_REVERTIBLE:
    return _failure('Keyword creation cannot be automatically reverted. '
                    'Please archive the keyword manually in Amazon Ads console.')

  if action_type.startswith(('pause_', 'enable_')):
    if before.get('state'):
      target_state = before['state']
    else:
      target_state = 'enabled' if action_type.startswith('pause_') else 'paused'
    return _set_state(api, entity_type, entity_id, target_state)

  if action_type == 'update_campaign_budget':
    previous = before.get('daily_budget_micros') or payload.get('old_budget_micros')
    if not previous:
      return _failure('No previous budget recorded')
    return api.update_campaign_budget(payload['campaign_id'], from_micros(previous))

  if action_type in ('set_bid', 'set_keyword_bid', 'set_adgroup_bid', 'update_ad_group_bid'):
    previous = before.get('bid_micros') or payload.get('old_bid_micros') or payload.get('current_bid_micros')
    if not previous:
      return _failure('No previous bid recorded')
    if action_type in ('set_adgroup_bid', 'update_ad_group_bid'):
      entity_type, entity_id = 'ad_group', str(payload.get('ad_group_id') or entity_id)
    return _set_bid(api, entity_type, entity_id, previous)

  return _failure(f"Revert not implemented for action type: {action_type}")


def revert_action(store: Store, connections: ConnectionService, action_id: str,
                  reason: Optional[str] = None, audit: Optional[AuditLogger] = None) -> Dict[str, Any]:
  """Undo one applied action; outcome scoring for it becomes inconclusive"""
  action = store.get('action_queue', {'id': action_id})
  if action is None:
    return {'success': False, 'error': 'Action not found'}
  if action.get('status') != 'applied':
    return {'success': False, 'error': 'Only applied actions can be reverted'}
  if action.get('reverted_at'):
    return {'success': False, 'error': 'Action has already been reverted'}

  logger.info(f"Reverting action {action_id} ({action['action_type']})")
  try:
    api = connections.api_for_profile(action['profile_id'])
    response = _revert_call(api, action)
  except (AuthenticationError, AmazonApiError) as e:
    response = _failure(str(e))

  if not response.success:
    logger.error(f"Failed to revert action {action_id}: {response.error}")
    return {'success': False, 'error': response.error or 'Failed to revert action'}

  reason = reason or 'User requested revert'
  store.update('action_queue', {'reverted_at': utcnow(), 'revert_reason': reason}, {'id': action_id})
  store.update('action_outcomes', {'outcome_status': 'inconclusive'}, {'action_id': action_id})
  if audit is not None:
    entity_type, entity_id = resolve_entity(action.get('payload') or {})
    audit.log(action['profile_id'], f"revert_{action['action_type']}", entity_type or '', entity_id or '',
              None, None, reason)
  logger.info(f"Successfully reverted action {action_id}")
  return {'success': True, 'message': 'Action reverted successfully', 'api_response': response.data}


# ============================================================================
# OUTCOMES
# ============================================================================

def _clamp(value: float) -> float:
  return max(-1.0, min(1.0, value))


def score_outcome(before: Dict[str, float], after: Dict[str, float]) -> Dict[str, Any]:
  """Deltas plus a [-1, 1] score from ACOS, ROAS and sales efficiency"""
  deltas = {k: round(float(after.get(k) or 0) - float(before.get(k) or 0), 4) for k in METRIC_COLUMNS}

  factors = []
  acos_before, acos_after = float(before.get('acos') or 0), float(after.get('acos') or 0)
  if acos_before and acos_after:
    factors.append(_clamp((acos_before - acos_after) / acos_before * 100 / 10))

  roas_before, roas_after = float(before.get('roas') or 0), float(after.get('roas') or 0)
  if roas_before and roas_after:
    factors.append(_clamp((roas_after - roas_before) / roas_before * 100 / 10))

  spend_before, spend_after = float(before.get('spend') or 0), float(after.get('spend') or 0)
  sales_before = float(before.get('sales') or 0)
  if spend_before and spend_after and sales_before > 0:
    efficiency_before = sales_before / spend_before
    efficiency_after = float(after.get('sales') or 0) / spend_after
    factors.append(_clamp((efficiency_after - efficiency_before) / efficiency_before * 100 / 10))

  if not factors:
    return {'deltas': deltas, 'score': None, 'status': 'inconclusive'}
  score = round(sum(factors) / len(factors), 2)
  if score >= 0.2:
    status = 'positive'
  elif score <= -0.2:
    status = 'negative'
  else:
    status = 'neutral'
  return {'deltas': deltas, 'score': score, 'status': status}


class OutcomeCollector:
  """Scores pending outcomes once the action is old enough"""

  def __init__(self, store: Store):
    self.store = store

  def collect(self, min_age_days: int = 7, now: Optional[datetime] = None) -> Dict[str, Any]:
    start_time = time.time()
    now = now or utcnow()
    logger.info("=== Collecting action outcomes ===")

    pending = self.store.select('action_outcomes', {
      'outcome_status': 'pending', 'applied_at__lte': now - timedelta(days=min_age_days),
    })
    results = {'evaluated': 0, 'positive': 0, 'negative': 0, 'neutral': 0, 'inconclusive': 0,
               'errors': []}

    for outcome in pending:
      try:
        action = self.store.get('action_queue', {'id': outcome['action_id']}) or {}
        after = entity_metrics(self.store, outcome.get('entity_type'), outcome.get('entity_id'))
        if action.get('reverted_at'):
          scored = {'deltas': {}, 'score': None, 'status': 'inconclusive'}
        else:
          scored = score_outcome(outcome.get('before_metrics') or {}, after)

        self.store.update('action_outcomes', {
          'after_metrics': after,
          'metric_deltas': scored['deltas'],
          'outcome_score': scored['score'],
          'outcome_status': scored['status'],
          'evaluated_at': now,
        }, {'id': outcome['id']})
        results['evaluated'] += 1
        results[scored['status']] += 1
      except StoreError as e:
        logger.error(f"Failed to score outcome {outcome.get('id')}: {e}")
        results['errors'].append({'outcome_id': outcome.get('id'), 'error': str(e)})

    results['execution_time_seconds'] = round(time.time() - start_time, 2)
    logger.info(f"Outcomes: {results['evaluated']} evaluated ({results['positive']} positive, "
                f"{results['negative']} negative)")
    return results
