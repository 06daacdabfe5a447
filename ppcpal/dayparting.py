"""
Dayparting
==========

Two mechanisms share this module:

* ``DaypartExecutor.run`` walks the stored weekly schedules and queues
  campaign pause/enable actions for the current UTC hour.
* ``DaypartExecutor.apply_bid_multipliers`` scales keyword bids by the
  day and hour multipliers from the ``dayparting`` config section, evaluated
  in the configured timezone.
"""

import json
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytz

from .audit import AuditLogger
from .auth import ConnectionService
from .config import Config
from .exceptions import AmazonApiError, AuthenticationError, StoreError
from .models import utcnow
from .rules import idempotency_key
from .store import Store

logger = logging.getLogger(__name__)


def _slots(schedule: Dict[str, Any]) -> List[Dict[str, Any]]:
  slots = schedule.get('schedule') or []
  if isinstance(slots, str):
    slots = json.loads(slots)
  return slots


class DaypartExecutor:
  """Schedule-driven campaign state changes and hourly bid multipliers"""

  def __init__(self, store: Store, config: Optional[Config] = None,
               connections: Optional[ConnectionService] = None,
               audit: Optional[AuditLogger] = None):
    self.store = store
    self.config = config or Config(data={})
    self.connections = connections
    self.audit = audit or AuditLogger()

  # ==========================================================================
  # SCHEDULES
  # ==========================================================================

  def run(self, now: Optional[datetime] = None) -> Dict[str, Any]:
    start_time = time.time()
    now = (now or utcnow()).astimezone(pytz.utc)
    day = (now.weekday() + 1) % 7  # Sunday = 0
    hour = now.hour
    logger.info(f"=== Running daypart executor (day {day}, hour {hour:02d}) ===")

    schedules = self.store.select('daypart_schedules', {'enabled': True})
    results = {'processed': 0, 'unchanged': 0, 'no_slot': 0, 'errors': 0, 'day': day, 'hour': hour}
    if not schedules:
      logger.info("No enabled daypart schedules found")

    for schedule in schedules:
      try:
        slot = next((s for s in _slots(schedule)
                     if int(s.get('day', -1)) == day and int(s.get('hour', -1)) == hour), None)
        if slot is None:
          results['no_slot'] += 1
          continue

        previous = schedule.get('last_applied_state')
        new_state = 'enabled' if slot.get('enabled') else 'paused'
        if previous == new_state:
          logger.debug(f"Campaign {schedule['campaign_id']} already {new_state}")
          results['unchanged'] += 1
          continue

        action_type = 'enable_entity' if new_state == 'enabled' else 'pause_entity'
        logger.info(f"Campaign {schedule['campaign_id']}: {previous} -> {new_state}")
        self.store.upsert('action_queue', {
          'profile_id': schedule['profile_id'],
          'action_type': action_type,
          'payload': {
            'entity_type': 'campaign',
            'entity_id': str(schedule['campaign_id']),
            'new_status': new_state,
            'source': 'dayparting',
            'schedule_id': schedule['id'],
          },
          'idempotency_key': idempotency_key(schedule['profile_id'], action_type,
                                             str(schedule['campaign_id']), now.strftime('%Y-%m-%dT%H')),
          'status': 'queued',
        }, on_conflict='idempotency_key', ignore_duplicates=True)

        self.store.update('daypart_schedules', {'last_applied_at': now, 'last_applied_state': new_state},
                          {'id': schedule['id']})
        self.store.insert('daypart_execution_history', {
          'schedule_id': schedule['id'],
          'profile_id': schedule['profile_id'],
          'campaign_id': schedule['campaign_id'],
          'action': new_state,
          'previous_state': previous,
          'new_state': new_state,
          'multiplier_applied': slot.get('multiplier'),
          'success': True,
          'executed_at': now,
        })
        results['processed'] += 1
      except (StoreError, ValueError, TypeError) as e:
        logger.error(f"Error processing schedule {schedule.get('id')}: {e}")
        results['errors'] += 1
        try:
          self.store.insert('daypart_execution_history', {
            'schedule_id': schedule.get('id'),
            'profile_id': schedule.get('profile_id'),
            'campaign_id': schedule.get('campaign_id'),
            'action': 'error',
            'success': False,
            'error': str(e),
            'executed_at': now,
          })
        except StoreError as log_error:
          logger.error(f"Could not record daypart failure: {log_error}")

    results['execution_time_seconds'] = round(time.time() - start_time, 2)
    logger.info(f"Daypart execution complete: {results['processed']} processed, {results['errors']} errors")
    return results

  # ==========================================================================
  # BID MULTIPLIERS
  # ==========================================================================

  def local_time(self, now: Optional[datetime] = None) -> datetime:
    timezone_str = self.config.get('dayparting.timezone', 'US/Pacific')
    now = now or utcnow()
    try:
      tz = pytz.timezone(timezone_str)
    except pytz.exceptions.UnknownTimeZoneError as e:
      logger.warning(f"Invalid timezone '{timezone_str}', using UTC: {e}")
      tz = pytz.utc
    return now.astimezone(tz)

  def multiplier_for(self, hour: int, day: str) -> float:
    """Bid multiplier for an hour (0-23) and an upper-case weekday name"""
    day_multiplier = float((self.config.get('dayparting.day_multipliers', {}) or {}).get(day, 1.0))
    hours = self.config.get('dayparting.hour_multipliers', {}) or {}
    hour_multiplier = float(hours.get(str(hour), hours.get(hour, 1.0)))

    min_mult = float(self.config.get('dayparting.min_multiplier', 0.4))
    max_mult = float(self.config.get('dayparting.max_multiplier', 1.8))
    return max(min_mult, min(max_mult, day_multiplier * hour_multiplier))

  def apply_bid_multipliers(self, profile_id: str, dry_run: bool = False,
                            now: Optional[datetime] = None) -> Dict[str, Any]:
    """Scale each keyword's base bid by the current multiplier"""
    start_time = time.time()
    logger.info("=== Applying config-based dayparting ===")
    if not self.config.get('dayparting.enabled', False):
      logger.info("Dayparting is disabled in config")
      return {}

    local = self.local_time(now)
    day = local.strftime('%A').upper()
    multiplier = self.multiplier_for(local.hour, day)
    logger.info(f"Current time: {day} {local.hour:02d}:00, multiplier {multiplier:.2f}")

    results = {'keywords_updated': 0, 'keywords_failed': 0, 'current_hour': local.hour,
               'current_day': day, 'multiplier': multiplier}
    min_bid = float(self.config.get('bid_optimization.min_bid', 0.25))
    max_bid = float(self.config.get('bid_optimization.max_bid', 5.0))

    keywords = self.store.select('keywords', {'profile_id': profile_id, 'status': 'enabled'})
    updates, changed = [], []
    for keyword in keywords:
      current = float(keyword.get('bid') or 0)
      base = float(keyword.get('base_bid') or current)
      if base <= 0:
        continue
      new_bid = round(max(min_bid, min(max_bid, base * multiplier)), 2)
      if abs(new_bid - current) <= 0.01:
        continue
      self.audit.log(profile_id, 'DAYPARTING_ADJUSTMENT', 'KEYWORD', keyword['amazon_keyword_id'],
                     f"${current:.2f}", f"${new_bid:.2f}",
                     f"Config dayparting: {day} {local.hour:02d}:00 ({multiplier:.2f}x)", dry_run)
      updates.append({'keywordId': str(keyword['amazon_keyword_id']), 'bid': new_bid})
      changed.append((keyword, base, new_bid))

    if dry_run:
      results['keywords_updated'] = len(updates)
    elif updates:
      if self.connections is None:
        raise AuthenticationError("Bid multipliers need a connection service to reach Amazon")
      for keyword, base, _ in changed:
        if not keyword.get('base_bid'):
          self.store.update('keywords', {'base_bid': base}, {'id': keyword['id']})
      try:
        api = self.connections.api_for_profile(profile_id, now)
        batch = api.batch_update_keywords(updates)
      except (AmazonApiError, AuthenticationError) as e:
        logger.error(f"Dayparting bid update failed for profile {profile_id}: {e}")
        results['keywords_failed'] = len(updates)
        results['error'] = str(e)
      else:
        results['keywords_updated'] = batch['success']
        results['keywords_failed'] = batch['failed']
        rejected = set(batch.get('failed_ids') or [])
        for keyword, _, new_bid in changed:
          if str(keyword['amazon_keyword_id']) not in rejected:
            self.store.update('keywords', {'bid': new_bid}, {'id': keyword['id']})

    results['execution_time_seconds'] = round(time.time() - start_time, 2)
    logger.info(f"Config-based dayparting applied: {results['keywords_updated']} keywords updated "
                f"in {results['execution_time_seconds']:.2f}s")
    return results
