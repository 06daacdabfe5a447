"""
Automation orchestrator
=======================

Wires the configured store, connection service and jobs together and runs
the hourly cycle: dayparting, rules, anomaly detection and the action
worker. Each task is isolated; a failure is recorded and the cycle moves on.
"""

import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .actions import ActionWorker, OutcomeCollector
from .anomalies import AnomalyDetector, NotificationDispatcher
from .audit import AuditLogger
from .auth import ConnectionService
from .bidding import BayesianBidOptimizer, ObservationCollector
from .config import Config, configure_logging, timing_logger
from .dayparting import DaypartExecutor
from .exceptions import PPCPalError
from .forecast import BudgetForecaster
from .governance import Governance
from .models import utcnow
from .rules import RulesEngine
from .store import Store, create_store
from .sync import SyncPipeline

logger = logging.getLogger(__name__)

SUMMARY_KEYS = [
  'execution_time_seconds', 'processed', 'errors', 'processed_rules', 'total_alerts',
  'total_actions', 'anomalies_found', 'applied', 'failed', 'skipped', 'keywords_updated',
]


class Automation:
  """Builds every job against one store and runs them on demand"""

  def __init__(self, config: Config, store: Store, connections: Optional[ConnectionService] = None,
               dry_run: bool = False):
    self.config = config
    self.store = store
    self.dry_run = dry_run
    self._connections = connections
    self.audit = AuditLogger(config.get('logging.output_dir'))
    self.governance = Governance(store)

    self.rules = RulesEngine(store, self.governance)
    self.anomalies = AnomalyDetector(store)
    self.collector = ObservationCollector(store)
    self.optimizer = BayesianBidOptimizer(store, self.governance, config.section('bayesian_optimizer'))
    self.outcomes = OutcomeCollector(store)
    self.forecaster = BudgetForecaster(store)

  @classmethod
  def from_config(cls, config_path: Optional[str] = None, dry_run: bool = False) -> 'Automation':
    config = Config(config_path) if config_path else Config(data={})
    configure_logging(config.get('logging.level', 'INFO'), config.get('logging.output_dir'))
    config.load_secrets()
    return cls(config, create_store(config), dry_run=dry_run)

  @property
  def connections(self) -> ConnectionService:
    """Built on first use; token encryption needs ENCRYPTION_KEY"""
    if self._connections is None:
      self._connections = ConnectionService.from_config(self.config, self.store)
    return self._connections

  @property
  def sync(self) -> SyncPipeline:
    return SyncPipeline(self.store, self.connections, self.config)

  @property
  def dayparting(self) -> DaypartExecutor:
    return DaypartExecutor(self.store, self.config, self._connections, self.audit)

  def worker(self) -> ActionWorker:
    return ActionWorker(self.store, self.connections, self.governance, self.audit, self.dry_run,
                        delay_seconds=float(self.config.get('actions.delay_seconds', 0.1)))

  def dispatcher(self) -> NotificationDispatcher:
    return NotificationDispatcher(self.store, dashboard_url=self.config.get('notifications.dashboard_url'),
                                  timeout=int(self.config.get('notifications.timeout', 10)))

  # ==========================================================================
  # HOURLY CYCLE
  # ==========================================================================

  @staticmethod
  def _task(name: str, func: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
    start = time.time()
    try:
      result = func()
      return {'status': 'ok', 'duration': round(time.time() - start, 2), 'result': result}
    except (PPCPalError, ValueError) as e:
      logger.error(f"{name} failed: {e}")
      return {'status': 'error', 'duration': round(time.time() - start, 2), 'error': str(e)}

  @timing_logger('hourly_cycle')
  def run_hourly(self, now: Optional[datetime] = None) -> Dict[str, Any]:
    start_time = time.time()
    now = now or utcnow()
    logger.info("=" * 80)
    logger.info("PPC PAL HOURLY CYCLE")
    logger.info("=" * 80)
    logger.info(f"Dry Run: {self.dry_run}")
    logger.info(f"Timestamp: {now.isoformat()}")

    active = self.store.count('amazon_connections', {'status': 'active'})
    if not active:
      logger.info("No active connections, skipping all hourly tasks")
      return {'skipped': True, 'reason': 'no_active_connections',
              'execution_time_seconds': round(time.time() - start_time, 2)}
    logger.info(f"Found {active} active connections, running hourly tasks")

    tasks = [
      ('daypart_executor', lambda: self.dayparting.run(now)),
      ('rules_engine', lambda: self.rules.run(now=now)),
      ('anomalies', lambda: self.anomalies.run(window='intraday', now=now)),
      ('action_worker', lambda: self.worker().process()),
    ]
    results: Dict[str, Any] = {'active_connections': active, 'tasks': {}}
    try:
      for name, func in tasks:
        results['tasks'][name] = self._task(name, func)
    finally:
      try:
        self.audit.save()
      except OSError as e:
        logger.error(f"Failed to save audit trail: {e}")

    results['execution_time_seconds'] = round(time.time() - start_time, 2)
    self.log_summary(results['tasks'])
    return results

  @staticmethod
  def log_summary(tasks: Dict[str, Dict[str, Any]]) -> None:
    logger.info("=" * 80)
    logger.info("AUTOMATION SUMMARY")
    logger.info("=" * 80)
    for name, outcome in tasks.items():
      title = name.upper().replace('_', ' ')
      if outcome.get('status') == 'error':
        logger.info(f"{title}: FAILED ({outcome.get('error')})")
        continue
      logger.info(f"{title}: ok in {outcome.get('duration', 0):.2f}s")
      result = outcome.get('result')
      if isinstance(result, dict):
        for key in SUMMARY_KEYS:
          if key in result and not isinstance(result[key], (list, dict)):
            logger.info(f"  {key.replace('_', ' ')}: {result[key]}")
    logger.info("=" * 80)
