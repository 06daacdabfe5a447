"""
Anomaly detection and notifications
===================================

Scores the latest campaign or ad group metrics against a robust baseline
(median and MAD) and records spikes or dips that cross the profile's
thresholds. Daily detection reads ``fact_performance_daily``; intraday
detection reads ``fact_performance_hourly`` and compares against the same
hour of the week over the last four weeks.

Detected anomalies raise alerts and, when the profile owner opted in for the
severity, queue rows in ``notifications_outbox``. ``NotificationDispatcher``
drains that outbox.
"""

import logging
import time
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np
import requests

from .exceptions import StoreError
from .models import parse_timestamp, utcnow
from .store import Store

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS = {
  'enabled': True,
  'intraday_enabled': True,
  'daily_enabled': True,
  'warn_threshold': 3.0,
  'critical_threshold': 5.0,
  'metric_thresholds': {},
  'intraday_cooldown_hours': 6,
  'daily_cooldown_hours': 48,
  'notify_on_warn': False,
  'notify_on_critical': True,
}

METRICS = ('spend', 'sales', 'acos', 'cvr', 'ctr', 'cpc', 'impressions')
# Metrics where a rise is bad; the rest are flagged when they drop
SPIKE_METRICS = {'spend', 'acos', 'cpc'}
SEVERITY_LEVELS = {'info': 1, 'warn': 2, 'critical': 3}
BASELINE_DAYS = 28
MIN_BASELINE_POINTS = 3
MAD_SCALE = 0.6745


# ============================================================================
# STATISTICS
# ============================================================================

def metric_value(row: Dict[str, Any], metric: str) -> Optional[float]:
  """Metric from a fact row (dollars); None when the ratio is undefined"""
  spend = float(row.get('spend') or 0)
  sales = float(row.get('sales') or 0)
  clicks = float(row.get('clicks') or 0)
  impressions = float(row.get('impressions') or 0)
  orders = float(row.get('orders') or 0)

  if metric == 'spend':
    return spend
  if metric == 'sales':
    return sales
  if metric == 'acos':
    return spend / sales * 100 if sales > 0 else None
  if metric == 'cvr':
    return orders / clicks * 100 if clicks > 0 else None
  if metric == 'ctr':
    return clicks / impressions * 100 if impressions > 0 else None
  if metric == 'cpc':
    return spend / clicks if clicks > 0 else None
  if metric == 'impressions':
    return impressions
  return None


def baseline_stats(values: List[float]) -> Optional[Tuple[float, float]]:
  """(median, MAD) of the values, or None with fewer than three points"""
  if len(values) < MIN_BASELINE_POINTS:
    return None
  data = np.asarray(values, dtype=float)
  median = float(np.median(data))
  mad = float(np.median(np.abs(data - median)))
  return median, mad


def robust_z(value: float, median: float, mad: float) -> float:
  if mad <= 0:
    return 0.0
  return MAD_SCALE * (value - median) / mad


def severity_for(z_score: float, metric: str, settings: Dict[str, Any]) -> str:
  overrides = (settings.get('metric_thresholds') or {}).get(metric) or {}
  warn = float(overrides.get('warn', settings['warn_threshold']))
  critical = float(overrides.get('critical', settings['critical_threshold']))
  if abs(z_score) >= critical:
    return 'critical'
  if abs(z_score) >= warn:
    return 'warn'
  return 'info'


def should_flag(metric: str, value: float, baseline: float, severity: str) -> bool:
  if severity == 'info' or metric not in METRICS:
    return False
  is_spike = value > baseline
  return is_spike if metric in SPIKE_METRICS else not is_spike


def fingerprint(profile_id: str, scope: str, entity_id: str, metric: str,
                window: str, bucket: str) -> str:
  return f"{profile_id}:{scope}:{entity_id}:{metric}:{window}:{bucket}"


# ============================================================================
# DETECTOR
# ============================================================================

class AnomalyDetector:
  """Robust z-score detection per profile, metric and entity"""

  def __init__(self, store: Store):
    self.store = store

  def settings(self, profile_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
    filters = {'profile_id': profile_id}
    if user_id:
      filters['user_id'] = user_id
    try:
      row = self.store.get('anomaly_settings', filters)
    except StoreError as e:
      logger.warning(f"Failed to fetch anomaly settings for {profile_id}, using defaults: {e}")
      row = None
    merged = dict(DEFAULT_SETTINGS)
    for key, value in (row or {}).items():
      if key in DEFAULT_SETTINGS and value is not None:
        merged[key] = value
    return merged

  def run(self, profile_id: Optional[str] = None, window: str = 'daily', scope: str = 'campaign',
          now: Optional[datetime] = None) -> Dict[str, Any]:
    start_time = time.time()
    now = now or utcnow()
    if window not in ('daily', 'intraday'):
      raise ValueError(f"Unknown anomaly window: {window}")
    if scope not in ('campaign', 'ad_group'):
      raise ValueError(f"Unknown anomaly scope: {scope}")
    logger.info(f"=== Detecting anomalies ({window}, {scope}) ===")

    run = self.store.insert('anomaly_runs', {
      'profile_id': profile_id or 'all', 'scope': scope, 'time_window': window, 'started_at': now,
    })[0]

    filters: Dict[str, Any] = {'status': 'active'}
    if profile_id:
      filters['profile_id'] = profile_id
    profiles = self.store.select('amazon_connections', filters)
    logger.info(f"Found {len(profiles)} profiles to check")

    results = {'run_id': run['id'], 'profiles_checked': 0, 'profiles_skipped': 0,
               'checked': 0, 'anomalies_found': 0, 'alerts': 0, 'notifications': 0, 'errors': []}

    for profile in profiles:
      pid = str(profile['profile_id'])
      try:
        settings = self.settings(pid, profile.get('user_id'))
        if not settings['enabled'] or not settings[f'{window}_enabled']:
          logger.info(f"Skipping profile {pid}: {window} detection disabled")
          results['profiles_skipped'] += 1
          continue

        checked, detected = self.detect_for_profile(pid, scope, window, settings, now)
        results['profiles_checked'] += 1
        results['checked'] += checked
        results['anomalies_found'] += len(detected)

        for anomaly in detected:
          notify = ((anomaly['severity'] == 'critical' and settings['notify_on_critical']) or
                    (anomaly['severity'] == 'warn' and settings['notify_on_warn']))
          results['alerts'] += 1
          results['notifications'] += self._raise_alert(anomaly, profile.get('user_id'), notify)
      except StoreError as e:
        logger.error(f"Error processing profile {pid}: {e}")
        results['errors'].append({'profile_id': pid, 'error': str(e)})

    self.store.update('anomaly_runs', {
      'finished_at': utcnow(),
      'status': 'success' if not results['errors'] else 'partial',
      'checked': results['checked'],
      'anomalies_found': results['anomalies_found'],
    }, {'id': run['id']})

    results['execution_time_seconds'] = round(time.time() - start_time, 2)
    logger.info(f"Anomaly detection complete: checked={results['checked']}, "
                f"found={results['anomalies_found']}, skipped={results['profiles_skipped']}")
    return results

  def detect_for_profile(self, profile_id: str, scope: str, window: str, settings: Dict[str, Any],
                         now: datetime) -> Tuple[int, List[Dict[str, Any]]]:
    if window == 'intraday':
      current, history = self._hourly_points(profile_id, scope, now)
    else:
      current, history = self._daily_points(profile_id, scope, now)

    cooldown = timedelta(hours=float(settings[f'{window}_cooldown_hours']))
    checked = 0
    detected = []

    for (entity_id, ts), row in sorted(current.items()):
      baseline_rows = self._baseline_rows(history.get(entity_id, {}), ts, window)
      for metric in METRICS:
        value = metric_value(row, metric)
        if value is None:
          continue
        checked += 1
        stats = baseline_stats([v for v in (metric_value(r, metric) for r in baseline_rows) if v is not None])
        if stats is None:
          continue
        median, mad = stats
        score = robust_z(value, median, mad)
        severity = severity_for(score, metric, settings)
        if not should_flag(metric, value, median, severity):
          continue

        bucket = ts.strftime('%Y-%m-%dT%H:00') if window == 'intraday' else ts.date().isoformat()
        key = fingerprint(profile_id, scope, entity_id, metric, window, bucket)
        if self._in_cooldown(key, severity, now - cooldown):
          continue

        anomaly = {
          'profile_id': profile_id,
          'scope': scope,
          'entity_id': entity_id,
          'metric': metric,
          'time_window': window,
          'ts': ts,
          'value': round(value, 4),
          'baseline': round(median, 4),
          'score': round(score, 4),
          'direction': 'spike' if value > median else 'dip',
          'severity': severity,
          'fingerprint': key,
          'state': 'new',
          'created_at': now,
        }
        self.store.upsert('anomalies', anomaly, on_conflict='fingerprint,ts')
        detected.append(anomaly)
        logger.info(f"Anomaly detected: {metric} {anomaly['direction']} ({severity}) for {scope} {entity_id}")
    return checked, detected

  def _in_cooldown(self, key: str, severity: str, since: datetime) -> bool:
    """True when a recent anomaly with this fingerprint is at least as severe"""
    recent = self.store.select('anomalies', {'fingerprint': key, 'created_at__gte': since},
                               order_by='created_at', desc=True, limit=1)
    if not recent:
      return False
    return SEVERITY_LEVELS[severity] <= SEVERITY_LEVELS.get(recent[0].get('severity'), 0)

  # --------------------------------------------------------------------------
  # Data points
  # --------------------------------------------------------------------------

  @staticmethod
  def _add(bucket: Dict[str, float], row: Dict[str, Any]) -> None:
    for column in ('impressions', 'clicks', 'spend', 'sales', 'orders'):
      bucket[column] += float(row.get(column) or 0)

  def _daily_points(self, profile_id: str, scope: str, now: datetime):
    today = now.date()
    start = today - timedelta(days=BASELINE_DAYS + 1)
    rows = self.store.select('fact_performance_daily', {
      'profile_id': profile_id, 'entity_type': scope, 'date__gte': start.isoformat(),
    })

    by_day: Dict[str, Dict[datetime, Dict[str, float]]] = defaultdict(lambda: defaultdict(lambda: defaultdict(float)))
    for row in rows:
      day = parse_timestamp(f"{row['date']}T23:59:59")
      self._add(by_day[str(row['entity_id'])][day], row)

    recent = {today, today - timedelta(days=1)}
    current = {(entity_id, ts): values
               for entity_id, days in by_day.items()
               for ts, values in days.items() if ts.date() in recent}
    return current, by_day

  def _hourly_points(self, profile_id: str, scope: str, now: datetime):
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    rows = self.store.select('fact_performance_hourly', {
      'profile_id': profile_id, 'hour_start__gte': day_start - timedelta(days=BASELINE_DAYS),
    })
    id_column = 'campaign_id' if scope == 'campaign' else 'ad_group_id'

    by_hour: Dict[str, Dict[datetime, Dict[str, float]]] = defaultdict(lambda: defaultdict(lambda: defaultdict(float)))
    for row in rows:
      if not row.get(id_column):
        continue
      hour = parse_timestamp(row['hour_start']).replace(minute=0, second=0, microsecond=0)
      self._add(by_hour[str(row[id_column])][hour], row)

    current = {(entity_id, hour): values
               for entity_id, hours in by_hour.items()
               for hour, values in hours.items() if day_start <= hour <= now}
    return current, by_hour

  @staticmethod
  def _baseline_rows(history: Dict[datetime, Dict[str, float]], ts: datetime,
                     window: str) -> List[Dict[str, float]]:
    if window == 'intraday':
      same_hour = {ts - timedelta(days=d) for d in range(7, BASELINE_DAYS + 1, 7)}
      return [values for hour, values in history.items() if hour in same_hour]
    first = ts.date() - timedelta(days=BASELINE_DAYS)
    return [values for day, values in history.items() if first <= day.date() < ts.date()]

  # --------------------------------------------------------------------------
  # Alerts
  # --------------------------------------------------------------------------

  def _raise_alert(self, anomaly: Dict[str, Any], user_id: Optional[str], notify: bool) -> int:
    """Insert the alert; returns the number of notifications queued"""
    metric = anomaly['metric'].upper()
    self.store.insert('alerts', {
      'rule_id': None,
      'profile_id': anomaly['profile_id'],
      'entity_type': anomaly['scope'],
      'entity_id': anomaly['entity_id'],
      'title': f"{metric} {anomaly['direction']} detected",
      'message': (f"{anomaly['scope']} {anomaly['entity_id']} shows {anomaly['metric']} "
                  f"{anomaly['direction']} of {anomaly['value']:.2f} vs baseline "
                  f"{anomaly['baseline']:.2f} (z-score: {anomaly['score']:.2f})"),
      'level': anomaly['severity'],
      'state': 'new',
      'data': {k: anomaly[k] for k in ('metric', 'value', 'baseline', 'score', 'direction')},
    })

    if not (notify and user_id):
      return 0
    prefs = self.store.get('user_prefs', {'user_id': user_id}) or {}
    channels = [c for c, key in (('slack', 'slack_webhook'), ('email', 'email')) if prefs.get(key)]
    if not channels:
      return 0

    subject = f"{anomaly['severity'].upper()}: {metric} {anomaly['direction']}"
    body = (f"Anomaly detected in {anomaly['scope']} {anomaly['entity_id']}:\n\n"
            f"{anomaly['metric']}: {anomaly['value']:.2f} (baseline: {anomaly['baseline']:.2f})\n"
            f"Z-score: {anomaly['score']:.2f}\nSeverity: {anomaly['severity']}")
    self.store.insert('notifications_outbox', [{
      'user_id': user_id,
      'channel': channel,
      'subject': subject,
      'body': body,
      'payload': {'profile_id': anomaly['profile_id'], 'entity_type': anomaly['scope'],
                  'entity_id': anomaly['entity_id']},
      'status': 'queued',
    } for channel in channels])
    return len(channels)


# ============================================================================
# NOTIFICATIONS
# ============================================================================

class NotificationDispatcher:
  """Sends queued notifications, one message each or as a per-channel digest"""

  def __init__(self, store: Store, session: Optional[requests.Session] = None,
               dashboard_url: Optional[str] = None,
               email_transport: Optional[Callable[[str, str, str], bool]] = None,
               timeout: int = 10):
    self.store = store
    self.session = session or requests.Session()
    self.dashboard_url = (dashboard_url or '').rstrip('/')
    self.email_transport = email_transport
    self.timeout = timeout

  def dispatch(self, limit: int = 100, now: Optional[datetime] = None) -> Dict[str, Any]:
    start_time = time.time()
    now = now or utcnow()
    logger.info("=== Dispatching notifications ===")

    queued = self.store.select('notifications_outbox', {'status': 'queued'},
                               order_by='created_at', limit=limit)
    results = {'processed': 0, 'errors': 0, 'batches': 0}
    if not queued:
      logger.info("No queued notifications found")
      results['execution_time_seconds'] = round(time.time() - start_time, 2)
      return results

    batches: Dict[Tuple[str, str], List[Dict[str, Any]]] = defaultdict(list)
    for notification in queued:
      batches[(str(notification.get('user_id')), notification.get('channel'))].append(notification)
    results['batches'] = len(batches)

    for (user_id, channel), notifications in batches.items():
      prefs = self.store.get('user_prefs', {'user_id': user_id})
      if not prefs:
        self._mark_failed(notifications, 'No notification preferences for user')
        results['errors'] += len(notifications)
        continue

      if (prefs.get('digest_frequency') or 'instant') == 'instant':
        for notification in notifications:
          error = self._send(channel, prefs, notification['subject'], notification['body'],
                             (notification.get('payload') or {}).get('entity_id'))
          if error:
            self._mark_failed([notification], error)
            results['errors'] += 1
          else:
            self._mark_sent([notification], now)
            results['processed'] += 1
      else:
        subject, body = self.build_digest(notifications)
        error = self._send(channel, prefs, subject, body)
        if error:
          self._mark_failed(notifications, error)
          results['errors'] += len(notifications)
        else:
          self._mark_sent(notifications, now)
          results['processed'] += len(notifications)

    results['execution_time_seconds'] = round(time.time() - start_time, 2)
    logger.info(f"Notifications complete: processed={results['processed']}, errors={results['errors']}")
    return results

  def build_digest(self, notifications: List[Dict[str, Any]]) -> Tuple[str, str]:
    critical = [n for n in notifications if 'CRITICAL' in (n.get('subject') or '')]
    warnings = [n for n in notifications if 'WARN' in (n.get('subject') or '')]
    info = len(notifications) - len(critical) - len(warnings)

    lines = ["*Alert Summary*", ""]
    if critical:
      lines.append(f"{len(critical)} critical alerts")
    if warnings:
      lines.append(f"{len(warnings)} warning alerts")
    if info:
      lines.append(f"{info} info alerts")
    lines.append("")
    for notification in (critical + warnings)[:10]:
      lines.extend([f"*{notification['subject']}*", notification.get('body') or '', ""])
    if len(notifications) > 10:
      lines.append(f"... and {len(notifications) - 10} more alerts")
    return f"PPC Pal Alert Digest ({len(notifications)} alerts)", "\n".join(lines)

  def _send(self, channel: str, prefs: Dict[str, Any], subject: str, body: str,
            entity_id: Optional[str] = None) -> Optional[str]:
    """Deliver one message; returns an error string on failure"""
    if channel == 'slack':
      if not prefs.get('slack_webhook'):
        return 'No Slack webhook configured'
      return self._send_slack(prefs['slack_webhook'], subject, body, entity_id)
    if channel == 'email':
      if not prefs.get('email'):
        return 'No email address configured'
      if self.email_transport is None:
        return 'Email transport not configured'
      return None if self.email_transport(prefs['email'], subject, body) else 'Email send failed'
    return f"Unknown channel: {channel}"

  def _send_slack(self, webhook_url: str, subject: str, body: str,
                  entity_id: Optional[str]) -> Optional[str]:
    blocks: List[Dict[str, Any]] = [
      {'type': 'header', 'text': {'type': 'plain_text', 'text': subject}},
      {'type': 'section', 'text': {'type': 'mrkdwn', 'text': body}},
    ]
    if self.dashboard_url:
      link = f"{self.dashboard_url}/dashboard" + (f"?entity={entity_id}" if entity_id else '')
      blocks.append({'type': 'actions', 'elements': [{
        'type': 'button', 'text': {'type': 'plain_text', 'text': 'View in Dashboard'},
        'url': link, 'style': 'primary',
      }]})

    try:
      response = self.session.post(webhook_url, json={'text': subject, 'blocks': blocks},
                                   timeout=self.timeout)
    except requests.exceptions.RequestException as e:
      logger.error(f"Slack notification error: {e}")
      return f"Slack request failed: {e}"
    if not response.ok:
      logger.error(f"Slack webhook failed: {response.status_code} {response.text[:200]}")
      return f"Slack webhook returned {response.status_code}"
    return None

  def _mark_sent(self, notifications: List[Dict[str, Any]], now: datetime) -> None:
    for notification in notifications:
      self.store.update('notifications_outbox', {'status': 'sent', 'sent_at': now},
                        {'id': notification['id']})

  def _mark_failed(self, notifications: List[Dict[str, Any]], error: str) -> None:
    for notification in notifications:
      self.store.update('notifications_outbox', {'status': 'failed', 'error': error[:500]},
                        {'id': notification['id']})
