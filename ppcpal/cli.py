"""Command line entry point: ``ppcpal <command> [options]``."""

import argparse
import json
import logging
import sys
from datetime import date
from typing import Any, Callable, Dict, List, Optional

from .actions import revert_action
from .auth import build_authorization_url
from .automation import Automation
from .dayparting import DaypartExecutor
from .exceptions import PPCPalError

logger = logging.getLogger(__name__)


def _print(result: Any) -> None:
  print(json.dumps(result, indent=2, default=str))


# ============================================================================
# COMMANDS
# ============================================================================

def cmd_oauth_url(app: Automation, args) -> Dict[str, Any]:
  redirect_uri = args.redirect_uri or app.config.get('amazon.redirect_uri')
  return build_authorization_url(app.config.secret('AMAZON_CLIENT_ID'), redirect_uri, args.user_id)


def cmd_oauth_callback(app: Automation, args) -> Dict[str, Any]:
  return app.connections.complete_oauth(args.code, args.state)


def cmd_refresh_tokens(app: Automation, args) -> Dict[str, Any]:
  return app.connections.refresh_expiring(window_minutes=args.window_minutes)


def cmd_sync(app: Automation, args) -> Dict[str, Any]:
  if args.connection_id:
    return app.sync.sync_connection(args.connection_id, date_range_days=args.days, time_unit=args.time_unit)
  return app.sync.sync_all(profile_id=args.profile_id)


def cmd_sync_search_terms(app: Automation, args) -> Dict[str, Any]:
  return app.sync.sync_search_terms(args.connection_id, date_range_days=args.days)


def cmd_cleanup_syncs(app: Automation, args) -> Dict[str, Any]:
  return app.sync.cleanup_stuck_syncs(user_id=args.user_id, older_than_minutes=args.older_than_minutes)


def cmd_collect_observations(app: Automation, args) -> Dict[str, Any]:
  observation_date = date.fromisoformat(args.date) if args.date else None
  return app.collector.collect(args.profile_id, observation_date=observation_date)


def cmd_optimize_bids(app: Automation, args) -> Dict[str, Any]:
  return app.optimizer.run(args.profile_id, dry_run=app.dry_run)


def cmd_run_rules(app: Automation, args) -> Dict[str, Any]:
  return app.rules.run(profile_id=args.profile_id)


def cmd_detect_anomalies(app: Automation, args) -> Dict[str, Any]:
  return app.anomalies.run(profile_id=args.profile_id, window=args.window, scope=args.scope)


def cmd_notify(app: Automation, args) -> Dict[str, Any]:
  return app.dispatcher().dispatch(limit=args.limit)


def cmd_daypart(app: Automation, args) -> Dict[str, Any]:
  if args.bids:
    if not args.profile_id:
      raise PPCPalError("--bids needs --profile-id")
    connections = None if app.dry_run else app.connections
    executor = DaypartExecutor(app.store, app.config, connections, app.audit)
    return executor.apply_bid_multipliers(args.profile_id, dry_run=app.dry_run)
  return app.dayparting.run()


def cmd_process_actions(app: Automation, args) -> Dict[str, Any]:
  return app.worker().process(batch_size=args.batch_size, profile_id=args.profile_id)


def cmd_revert(app: Automation, args) -> Dict[str, Any]:
  return revert_action(app.store, app.connections, args.action_id, reason=args.reason, audit=app.audit)


def cmd_collect_outcomes(app: Automation, args) -> Dict[str, Any]:
  return app.outcomes.collect(min_age_days=args.min_age_days)


def cmd_forecast(app: Automation, args) -> Dict[str, Any]:
  return app.forecaster.forecast(args.profile_id, months=args.months, save=not app.dry_run)


def cmd_export(app: Automation, args) -> Dict[str, Any]:
  from .warehouse import BigQueryExporter

  project_id = app.config.get('google_cloud.project_id')
  dataset_id = app.config.get('google_cloud.bigquery.dataset_id', 'amazon_ads_data')
  if not project_id:
    raise PPCPalError("google_cloud.project_id is required for the BigQuery export")
  exporter = BigQueryExporter(project_id, dataset_id,
                              location=app.config.get('google_cloud.bigquery.location', 'US'))
  return exporter.export_performance(app.store, args.profile_id, days=args.days)


def cmd_hourly(app: Automation, args) -> Dict[str, Any]:
  return app.run_hourly()


def cmd_verify_connection(app: Automation, args) -> Dict[str, Any]:
  api = app.connections.api_for_profile(args.profile_id)
  return api.verify_connection(args.sample_size)


# ============================================================================
# PARSER
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
  parser = argparse.ArgumentParser(prog='ppcpal', description='PPC Pal Amazon Ads automation backend')
  parser.add_argument('--config', help='Path to configuration YAML file')
  parser.add_argument('--dry-run', action='store_true', help='Run without making actual changes')
  sub = parser.add_subparsers(dest='command', required=True)

  def add(name: str, func: Callable, help_text: str) -> argparse.ArgumentParser:
    p = sub.add_parser(name, help=help_text)
    p.set_defaults(func=func)
    return p

  p = add('oauth-url', cmd_oauth_url, 'Print the Login with Amazon consent URL')
  p.add_argument('--user-id', required=True)
  p.add_argument('--redirect-uri')

  p = add('oauth-callback', cmd_oauth_callback, 'Complete the OAuth flow and store the connection')
  p.add_argument('--code', required=True)
  p.add_argument('--state', required=True)

  p = add('refresh-tokens', cmd_refresh_tokens, 'Refresh tokens that expire soon')
  p.add_argument('--window-minutes', type=int, default=45)

  p = add('sync', cmd_sync, 'Sync entities and performance')
  p.add_argument('--connection-id')
  p.add_argument('--profile-id')
  p.add_argument('--days', type=int)
  p.add_argument('--time-unit', choices=['DAILY', 'SUMMARY'])

  p = add('sync-search-terms', cmd_sync_search_terms, 'Sync the search term report')
  p.add_argument('--connection-id', required=True)
  p.add_argument('--days', type=int)

  p = add('cleanup-syncs', cmd_cleanup_syncs, 'Fail sync jobs stuck in running state')
  p.add_argument('--user-id')
  p.add_argument('--older-than-minutes', type=int, default=10)

  p = add('collect-observations', cmd_collect_observations, 'Update bid posteriors from daily facts')
  p.add_argument('--profile-id', required=True)
  p.add_argument('--date', help='Observation date (YYYY-MM-DD), default yesterday')

  p = add('optimize-bids', cmd_optimize_bids, 'Run Thompson sampling bid optimization')
  p.add_argument('--profile-id', required=True)

  p = add('run-rules', cmd_run_rules, 'Evaluate automation rules')
  p.add_argument('--profile-id')

  p = add('detect-anomalies', cmd_detect_anomalies, 'Detect metric anomalies')
  p.add_argument('--profile-id')
  p.add_argument('--window', choices=['daily', 'intraday'], default='daily')
  p.add_argument('--scope', choices=['campaign', 'ad_group'], default='campaign')

  p = add('notify', cmd_notify, 'Send queued notifications')
  p.add_argument('--limit', type=int, default=100)

  p = add('daypart', cmd_daypart, 'Apply daypart schedules (or bid multipliers with --bids)')
  p.add_argument('--bids', action='store_true')
  p.add_argument('--profile-id')

  p = add('process-actions', cmd_process_actions, 'Apply queued actions')
  p.add_argument('--batch-size', type=int, default=25)
  p.add_argument('--profile-id')

  p = add('revert', cmd_revert, 'Revert an applied action')
  p.add_argument('--action-id', required=True)
  p.add_argument('--reason')

  p = add('collect-outcomes', cmd_collect_outcomes, 'Score the outcome of applied actions')
  p.add_argument('--min-age-days', type=int, default=7)

  p = add('forecast', cmd_forecast, 'Forecast monthly spend')
  p.add_argument('--profile-id', required=True)
  p.add_argument('--months', type=int, default=3)

  p = add('export', cmd_export, 'Export performance facts to BigQuery')
  p.add_argument('--profile-id', required=True)
  p.add_argument('--days', type=int, default=30)

  add('hourly', cmd_hourly, 'Run the hourly automation cycle')

  p = add('verify-connection', cmd_verify_connection, 'Check Amazon Ads API connectivity')
  p.add_argument('--profile-id', required=True)
  p.add_argument('--sample-size', type=int, default=5)

  return parser


def main(argv: Optional[List[str]] = None) -> int:
  args = build_parser().parse_args(argv)
  try:
    app = Automation.from_config(args.config, dry_run=args.dry_run)
    result = args.func(app, args)
  except PPCPalError as e:
    logger.error(f"{args.command} failed: {e}")
    return 1
  _print(result)
  if isinstance(result, dict) and result.get('success') is False:
    return 1
  return 0


if __name__ == '__main__':
  sys.exit(main())
