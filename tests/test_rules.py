"""Rules engine: evaluators, modes, entitlements and throttling."""

from datetime import timedelta

from conftest import NOW
from ppcpal.rules import RulesEngine, idempotency_key, plan_allows

TODAY = NOW.date()


def _rule(store, rule_type, mode='auto', params=None, **extra):
  row = {'profile_id': '111', 'user_id': 'user-1', 'rule_type': rule_type, 'mode': mode,
         'enabled': True, 'params': params or {}}
  row.update(extra)
  return store.insert('automation_rules', row)[0]


def _pro(store):
  store.insert('user_subscriptions', {'user_id': 'user-1', 'plan': 'pro'})


def test_idempotency_key_is_stable_and_alphanumeric():
  key = idempotency_key('111', 'pause_campaign', '42', '2026-10-19')
  assert key == idempotency_key('111', 'pause_campaign', '42', '2026-10-19')
  assert key != idempotency_key('111', 'pause_campaign', '42', '2026-10-20')
  assert len(key) == 32 and key.isalnum()


def test_plan_entitlements():
  assert plan_allows(None, 'budget_depletion')
  assert not plan_allows('free', 'st_harvest')
  assert plan_allows('starter', 'st_prune')
  assert plan_allows('pro', 'anything')


def test_budget_depletion_alerts_and_queues_pause(store):
  rule = _rule(store, 'budget_depletion', params={'percentThreshold': 80})
  store.insert('fact_budget_usage', [
    {'profile_id': '111', 'campaign_id': '1', 'date': TODAY, 'budget': 50, 'spend': 45,
     'captured_at': NOW},
    {'profile_id': '111', 'campaign_id': '1', 'date': TODAY, 'budget': 50, 'spend': 10,
     'captured_at': NOW - timedelta(hours=5)},
    {'profile_id': '111', 'campaign_id': '2', 'date': TODAY, 'budget': 50, 'spend': 5, 'captured_at': NOW},
  ])

  result = RulesEngine(store).run(now=NOW)

  assert result['processed_rules'] == 1
  assert result['total_alerts'] == 1 and result['total_actions'] == 1
  alert = store.get('alerts', {'rule_id': rule['id']})
  assert alert['entity_id'] == '1' and alert['level'] == 'critical'
  action = store.get('action_queue', {'rule_id': rule['id']})
  assert action['action_type'] == 'pause_campaign'
  assert action['status'] == 'queued'
  assert store.get('rule_runs', {'rule_id': rule['id']})['status'] == 'success'


def test_suggestion_mode_marks_actions_suggested(store):
  _rule(store, 'budget_depletion', mode='suggestion')
  store.insert('fact_budget_usage', {'profile_id': '111', 'campaign_id': '1', 'date': TODAY,
                                     'budget': 10, 'spend': 10, 'captured_at': NOW})
  RulesEngine(store).run(now=NOW)
  assert store.get('action_queue', {'profile_id': '111'})['status'] == 'suggested'


def test_dry_run_mode_only_alerts(store):
  _rule(store, 'budget_depletion', mode='dry_run')
  store.insert('fact_budget_usage', {'profile_id': '111', 'campaign_id': '1', 'date': TODAY,
                                     'budget': 10, 'spend': 10, 'captured_at': NOW})
  result = RulesEngine(store).run(now=NOW)
  assert result['total_alerts'] == 1 and result['total_actions'] == 0
  assert store.count('action_queue') == 0


def test_same_day_rerun_does_not_duplicate_actions(store):
  _rule(store, 'budget_depletion')
  store.insert('fact_budget_usage', {'profile_id': '111', 'campaign_id': '1', 'date': TODAY,
                                     'budget': 10, 'spend': 10, 'captured_at': NOW})
  engine = RulesEngine(store)
  engine.run(now=NOW)
  second = engine.run(now=NOW + timedelta(hours=1))
  assert second['total_actions'] == 0
  assert store.count('action_queue') == 1


def test_governance_blocks_protected_campaign(store):
  _rule(store, 'budget_depletion')
  store.insert('protected_entities', {'profile_id': '111', 'entity_type': 'campaign', 'entity_id': '1'})
  store.insert('fact_budget_usage', {'profile_id': '111', 'campaign_id': '1', 'date': TODAY,
                                     'budget': 10, 'spend': 10, 'captured_at': NOW})
  result = RulesEngine(store).run(now=NOW)
  assert result['total_alerts'] == 1
  assert store.count('action_queue') == 0


def test_spend_spike_needs_baseline(store):
  _rule(store, 'spend_spike', params={'lookbackDays': 7, 'stdevMultiplier': 2.0, 'minSpend': 5})
  store.insert('campaigns', {'profile_id': '111', 'amazon_campaign_id': '1', 'name': 'Brand'})
  history = [10.0, 11.0, 9.0, 10.0, 10.5]
  store.insert('fact_performance_daily', [
    {'profile_id': '111', 'entity_type': 'campaign', 'entity_id': '1',
     'date': (TODAY - timedelta(days=i + 1)).isoformat(), 'spend': spend}
    for i, spend in enumerate(history)
  ] + [
    {'profile_id': '111', 'entity_type': 'campaign', 'entity_id': '1', 'date': TODAY.isoformat(), 'spend': 40.0},
    {'profile_id': '111', 'entity_type': 'campaign', 'entity_id': '2', 'date': TODAY.isoformat(), 'spend': 90.0},
  ])

  result = RulesEngine(store).run(now=NOW)

  assert result['total_alerts'] == 1 and result['total_actions'] == 0
  alert = store.get('alerts', {'entity_id': '1'})
  assert alert['title'] == 'Spend Spike Detected'
  assert '"Brand"' in alert['message']


def _term(term, clicks, cost, conversions, sales, ad_group='10', day=None):
  return {'profile_id': '111', 'date': (day or TODAY - timedelta(days=2)).isoformat(), 'campaign_id': '1',
          'ad_group_id': ad_group, 'search_term': term, 'match_type': 'BROAD', 'clicks': clicks,
          'cost_micros': cost, 'attributed_conversions_7d': conversions, 'attributed_sales_7d_micros': sales}


def test_search_term_rules_need_entitlement(store):
  _rule(store, 'st_harvest')
  result = RulesEngine(store).run(now=NOW)
  assert result['skipped_rules'] == 1 and result['processed_rules'] == 0


def test_search_term_harvest(store):
  _pro(store)
  _rule(store, 'st_harvest', params={'minConvs': 2, 'maxAcos': 0.35})
  store.insert('keywords', {'profile_id': '111', 'amazon_adgroup_id': '10', 'keyword_text': 'potting soil'})
  store.insert('fact_search_term_daily', [
    _term('organic soil', 10, 3_000_000, 2, 20_000_000),
    _term('organic soil', 5, 1_000_000, 1, 10_000_000, day=TODAY - timedelta(days=1)),
    _term('potting soil', 10, 1_000_000, 3, 30_000_000),
    _term('b0abc12345', 10, 1_000_000, 3, 30_000_000),
    _term('cheap dirt', 10, 9_000_000, 2, 10_000_000),
  ])

  RulesEngine(store).run(now=NOW)

  actions = store.select('action_queue', {'action_type': 'create_keyword'})
  assert len(actions) == 1
  payload = actions[0]['payload']
  assert payload['keyword_text'] == 'organic soil'
  assert payload['match_type'] == 'exact'
  assert payload['bid_micros'] == 266_666


def test_search_term_prune(store):
  _pro(store)
  _rule(store, 'st_prune', params={'minClicks': 20, 'maxConvs': 0})
  store.insert('fact_search_term_daily', [
    _term('free soil', 25, 5_000_000, 0, 0),
    _term('soil bag', 25, 5_000_000, 1, 9_000_000),
  ])

  RulesEngine(store).run(now=NOW)

  actions = store.select('action_queue', {'action_type': 'negative_keyword'})
  assert len(actions) == 1
  payload = actions[0]['payload']
  assert payload['entity_type'] == 'ad_group' and payload['ad_group_id'] == '10'
  assert payload['keyword_text'] == 'free soil'


def test_throttle_skips_rule(store):
  rule = _rule(store, 'budget_depletion', throttle={'maxActionsPerDay': 1})
  store.insert('action_queue', {'rule_id': rule['id'], 'profile_id': '111', 'created_at': NOW - timedelta(hours=1)})
  result = RulesEngine(store).run(now=NOW)
  assert result['skipped_rules'] == 1


def test_unknown_rule_type_is_skipped(store):
  _rule(store, 'mystery')
  assert RulesEngine(store).run(now=NOW)['skipped_rules'] == 1


def test_malformed_rule_params_do_not_stop_other_rules(store):
  bad = _rule(store, 'budget_depletion', params={'percentThreshold': 'eighty'})
  good = _rule(store, 'budget_depletion', params={'percentThreshold': 80})
  store.insert('fact_budget_usage', {'profile_id': '111', 'campaign_id': '1', 'date': TODAY,
                                     'budget': 50, 'spend': 45, 'captured_at': NOW})

  result = RulesEngine(store).run(now=NOW)

  assert result['processed_rules'] == 1
  assert [e['rule_id'] for e in result['errors']] == [bad['id']]
  bad_run = store.get('rule_runs', {'rule_id': bad['id']})
  assert bad_run['status'] == 'error' and 'eighty' in bad_run['error']
  assert store.get('rule_runs', {'rule_id': good['id']})['status'] == 'success'
  assert store.get('action_queue', {'rule_id': good['id']})['action_type'] == 'pause_campaign'
