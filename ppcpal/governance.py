"""
Automation guardrails
=====================

Per-profile limits every automated change goes through: kill switch,
protected entities, bid bounds and step size, daily action quota and the
approval threshold. Bid values are in micros.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from .exceptions import StoreError
from .models import utcnow
from .store import Store

logger = logging.getLogger(__name__)

DEFAULT_GOVERNANCE = {
  'max_bid_change_percent': 20,
  'min_bid_micros': 100_000,
  'max_bid_micros': 10_000_000,
  'daily_spend_cap_micros': None,
  'monthly_spend_cap_micros': None,
  'max_actions_per_day': 100,
  'require_approval_above_micros': 1_000_000,
  'automation_paused': False,
  'automation_paused_at': None,
  'automation_paused_reason': None,
}


@dataclass
class GuardrailResult:
  bid_micros: int
  was_adjusted: bool = False
  reason: Optional[str] = None


@dataclass
class GovernanceCheck:
  allowed: bool
  reason: Optional[str] = None
  requires_approval: bool = False


def _dollars(micros: int) -> str:
  return f"${micros / 1_000_000:.2f}"


@dataclass
class Governance:
  """Guardrail checks with settings cached for the lifetime of the instance"""
  store: Store
  _cache: Dict[str, Optional[Dict[str, Any]]] = field(default_factory=dict)

  def settings_row(self, profile_id: str) -> Optional[Dict[str, Any]]:
    """Stored settings for a profile, or None when the user never configured any"""
    if profile_id in self._cache:
      return self._cache[profile_id]
    try:
      row = self.store.get('automation_governance', {'profile_id': profile_id})
    except StoreError as e:
      logger.error(f"Error fetching governance settings for profile {profile_id}: {e}")
      return None
    self._cache[profile_id] = row
    return row

  def settings(self, profile_id: str) -> Dict[str, Any]:
    merged = dict(DEFAULT_GOVERNANCE, profile_id=profile_id)
    for key, value in (self.settings_row(profile_id) or {}).items():
      if value is not None or key not in DEFAULT_GOVERNANCE:
        merged[key] = value
    return merged

  def clear_cache(self) -> None:
    self._cache.clear()

  def is_automation_paused(self, profile_id: str) -> Tuple[bool, Optional[str]]:
    row = self.settings_row(profile_id)
    if row and row.get('automation_paused'):
      return True, row.get('automation_paused_reason') or 'Automation paused by user'
    return False, None

  def is_entity_protected(self, profile_id: str, entity_type: str,
                          entity_id: str) -> Tuple[bool, Optional[str]]:
    try:
      row = self.store.get('protected_entities', {
        'profile_id': profile_id, 'entity_type': entity_type, 'entity_id': str(entity_id),
      })
    except StoreError as e:
      logger.error(f"Error checking protected entity {entity_type}/{entity_id}: {e}")
      return False, None
    if row:
      return True, row.get('reason') or f"{entity_type} is protected from automation"
    return False, None

  def apply_bid_guardrails(self, profile_id: str, current_bid_micros: Optional[int],
                           proposed_bid_micros: int) -> GuardrailResult:
    """Clamp to absolute bounds, then limit the step from the current bid"""
    s = self.settings(profile_id)
    min_bid, max_bid = int(s['min_bid_micros']), int(s['max_bid_micros'])
    max_change = float(s['max_bid_change_percent'])

    result = GuardrailResult(bid_micros=int(round(proposed_bid_micros)))
    if result.bid_micros < min_bid:
      result = GuardrailResult(min_bid, True, f"Bid raised to minimum {_dollars(min_bid)}")
    if result.bid_micros > max_bid:
      result = GuardrailResult(max_bid, True, f"Bid capped to maximum {_dollars(max_bid)}")

    if current_bid_micros and current_bid_micros > 0:
      change_percent = abs(result.bid_micros - current_bid_micros) / current_bid_micros * 100
      if change_percent > max_change:
        direction = 1 if result.bid_micros > current_bid_micros else -1
        limited = round(current_bid_micros + direction * current_bid_micros * max_change / 100)
        result = GuardrailResult(
          bid_micros=max(min_bid, min(max_bid, int(limited))),
          was_adjusted=True,
          reason=f"Bid change limited to {max_change:g}%",
        )
    return result

  def applied_today(self, profile_id: str, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return self.store.count('action_queue', {
      'profile_id': profile_id, 'status': 'applied', 'applied_at__gte': day_start,
    })

  def check_action_quota(self, profile_id: str, now: Optional[datetime] = None) -> GovernanceCheck:
    limit = int(self.settings(profile_id)['max_actions_per_day'])
    try:
      count = self.applied_today(profile_id, now)
    except StoreError as e:
      logger.error(f"Error checking action quota for {profile_id}, allowing: {e}")
      return GovernanceCheck(allowed=True)
    if count >= limit:
      return GovernanceCheck(False, f"Daily action limit ({limit}) reached for this profile")
    return GovernanceCheck(allowed=True)

  def requires_approval(self, profile_id: str, impact_micros: int) -> bool:
    return impact_micros >= int(self.settings(profile_id)['require_approval_above_micros'])

  def check_action(self, profile_id: str, entity_type: str, entity_id: str,
                   impact_micros: Optional[int] = None,
                   now: Optional[datetime] = None) -> GovernanceCheck:
    """Kill switch, protection, quota, then approval threshold"""
    paused, reason = self.is_automation_paused(profile_id)
    if paused:
      return GovernanceCheck(False, reason)

    protected, reason = self.is_entity_protected(profile_id, entity_type, entity_id)
    if protected:
      return GovernanceCheck(False, reason)

    quota = self.check_action_quota(profile_id, now)
    if not quota.allowed:
      return quota

    needs_approval = impact_micros is not None and self.requires_approval(profile_id, impact_micros)
    return GovernanceCheck(allowed=True, requires_approval=needs_approval)
