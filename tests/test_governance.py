"""Guardrails: kill switch, protection, bid bounds, quota and approval."""

from datetime import timedelta

from conftest import NOW
from ppcpal.governance import Governance


def test_defaults_when_no_settings(store):
  settings = Governance(store).settings('111')
  assert settings['max_bid_change_percent'] == 20
  assert settings['automation_paused'] is False


def test_stored_settings_override_defaults_but_nulls_do_not(store):
  store.insert('automation_governance', {'profile_id': '111', 'max_actions_per_day': 5,
                                         'min_bid_micros': None})
  settings = Governance(store).settings('111')
  assert settings['max_actions_per_day'] == 5
  assert settings['min_bid_micros'] == 100_000


def test_bid_guardrails_clamp_then_limit_step(store):
  governance = Governance(store)

  result = governance.apply_bid_guardrails('111', 1_000_000, 2_000_000)
  assert result.bid_micros == 1_200_000
  assert result.was_adjusted and '20%' in result.reason

  result = governance.apply_bid_guardrails('111', None, 50_000)
  assert result.bid_micros == 100_000
  assert 'minimum' in result.reason

  result = governance.apply_bid_guardrails('111', 9_500_000, 20_000_000)
  assert result.bid_micros == 10_000_000

  result = governance.apply_bid_guardrails('111', 1_000_000, 1_100_000)
  assert result.bid_micros == 1_100_000 and not result.was_adjusted


def test_kill_switch_blocks_actions(store):
  store.insert('automation_governance', {'profile_id': '111', 'automation_paused': True,
                                         'automation_paused_reason': 'Holiday freeze'})
  check = Governance(store).check_action('111', 'keyword', 'kw-1', now=NOW)
  assert not check.allowed
  assert check.reason == 'Holiday freeze'


def test_protected_entity_blocks_actions(store):
  store.insert('protected_entities', {'profile_id': '111', 'entity_type': 'campaign', 'entity_id': '42',
                                      'reason': 'Brand defense'})
  governance = Governance(store)
  assert not governance.check_action('111', 'campaign', '42', now=NOW).allowed
  assert governance.check_action('111', 'campaign', '43', now=NOW).allowed


def test_daily_quota_counts_only_todays_applied_actions(store):
  store.insert('automation_governance', {'profile_id': '111', 'max_actions_per_day': 2})
  store.insert('action_queue', [
    {'profile_id': '111', 'status': 'applied', 'applied_at': NOW - timedelta(hours=1)},
    {'profile_id': '111', 'status': 'applied', 'applied_at': NOW - timedelta(days=1)},
    {'profile_id': '111', 'status': 'queued'},
  ])
  governance = Governance(store)
  assert governance.applied_today('111', NOW) == 1
  assert governance.check_action('111', 'keyword', 'kw-1', now=NOW).allowed

  store.insert('action_queue', {'profile_id': '111', 'status': 'applied', 'applied_at': NOW})
  check = governance.check_action('111', 'keyword', 'kw-1', now=NOW)
  assert not check.allowed and 'limit (2)' in check.reason


def test_approval_threshold(store):
  governance = Governance(store)
  assert governance.check_action('111', 'keyword', 'kw-1', impact_micros=1_500_000, now=NOW).requires_approval
  assert not governance.check_action('111', 'keyword', 'kw-1', impact_micros=200_000, now=NOW).requires_approval
  assert not governance.check_action('111', 'keyword', 'kw-1', now=NOW).requires_approval
