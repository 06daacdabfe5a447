"""
Configuration, credentials and logging setup
=============================================

Configuration lives in a YAML file (see ppc_config.example.yaml). Secrets are
read from the environment, or from Google Secret Manager when
``google_cloud.project_id`` and ``google_cloud.secret_id`` are configured.
"""

import functools
import json
import logging
import os
import sys
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import yaml

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Keys expected in the Secret Manager JSON payload
SECRET_KEYS = [
  'AMAZON_CLIENT_ID',
  'AMAZON_CLIENT_SECRET',
  'SUPABASE_URL',
  'SUPABASE_SERVICE_ROLE_KEY',
  'ENCRYPTION_KEY',
]
REQUIRED_SECRET_KEYS = ['AMAZON_CLIENT_ID', 'AMAZON_CLIENT_SECRET']


# ============================================================================
# LOGGING SETUP
# ============================================================================

def is_cloud_runtime() -> bool:
  """True when running on Cloud Functions / Cloud Run"""
  return os.getenv('K_SERVICE') is not None or os.getenv('FUNCTION_TARGET') is not None


def configure_logging(level: str = 'INFO', output_dir: Optional[str] = None) -> None:
  """Install root handlers: stdout only in the cloud, stdout plus a file locally"""
  handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]

  if not is_cloud_runtime() and output_dir:
    os.makedirs(output_dir, exist_ok=True)
    filename = os.path.join(
      output_dir,
      f'ppcpal_{datetime.now().strftime("%Y%m%d_%H%M%S")}.log'
    )
    handlers.append(logging.FileHandler(filename))

  logging.basicConfig(
    level=getattr(logging, str(level).upper(), logging.INFO),
    format=LOG_FORMAT,
    handlers=handlers,
    force=True
  )

  if is_cloud_runtime():
    logger.info("Running in Cloud Functions environment - using Cloud Logging")
  else:
    logger.debug("Running in local environment - using file and console logging")


def timing_logger(operation_name: Optional[str] = None):
  """Decorator logging how long a job ran, or how it failed"""
  def decorator(func):
    name = operation_name or func.__name__

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
      logger.info(f"Starting {name}...")
      started = time.time()
      try:
        result = func(*args, **kwargs)
      except Exception as e:
        logger.error(f"✗ {name} failed after {time.time() - started:.2f}s: {e}")
        raise
      logger.info(f"✓ {name} finished in {time.time() - started:.2f}s")
      return result
    return wrapper
  return decorator


def mask(value: Optional[str], visible: int = 8) -> str:
  """Mask a secret for log output"""
  if not value:
    return 'MISSING'
  return value[:visible] + '...' if len(value) > visible else '***'


# ============================================================================
# CONFIGURATION LOADER
# ============================================================================

class Config:
  """Configuration manager with dot-notation lookups"""

  def __init__(self, config_path: Optional[str] = None, data: Optional[Dict] = None):
    self.config_path = config_path
    if data is not None:
      if not isinstance(data, dict):
        raise ConfigurationError(
          f"Invalid configuration format: expected dictionary, got {type(data).__name__}"
        )
      self.data = data
    elif config_path:
      self.data = self._load_config()
    else:
      self.data = {}
    self._secrets: Dict[str, str] = {}

  def _load_config(self) -> Dict:
    """
    Load configuration from YAML file
    """
    if not os.path.exists(self.config_path):
      error_msg = f"Configuration file not found: {self.config_path}"
      logger.error(error_msg)
      raise ConfigurationError(error_msg)

    try:
      with open(self.config_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f)
    except yaml.YAMLError as e:
      error_msg = f"Failed to parse YAML configuration: {e}"
      logger.error(error_msg)
      raise ConfigurationError(error_msg) from e
    except OSError as e:
      error_msg = f"Failed to read configuration file: {e}"
      logger.error(error_msg)
      raise ConfigurationError(error_msg) from e

    if config is None:
      config = {}
    if not isinstance(config, dict):
      error_msg = f"Invalid configuration format: expected dictionary, got {type(config).__name__}"
      logger.error(error_msg)
      raise ConfigurationError(error_msg)

    logger.info(f"Configuration loaded from {self.config_path}")
    return config

  def get(self, key: str, default=None):
    """Dot-notation lookup ('sync.date_range_days'); missing or null values give the default"""
    if not key:
      return default
    node: Any = self.data
    for part in key.split('.'):
      node = node.get(part) if isinstance(node, dict) else None
      if node is None:
        return default
    return node

  def section(self, key: str) -> Dict[str, Any]:
    """Return a config mapping, or an empty dict"""
    value = self.get(key, {})
    return dict(value) if isinstance(value, dict) else {}

  def secret(self, name: str, default: Optional[str] = None) -> Optional[str]:
    """Secret lookup: Secret Manager payload first, then the environment"""
    value = self._secrets.get(name) or os.getenv(name, '')
    value = value.strip() if isinstance(value, str) else value
    return value or default

  def load_secrets(self) -> bool:
    """Pull credentials from Google Secret Manager when configured"""
    project_id = self.get('google_cloud.project_id')
    secret_id = self.get('google_cloud.secret_id')

    if not (project_id and secret_id):
      logger.debug("Google Secret Manager not configured, using environment variables")
      return False

    logger.info("Google Secret Manager configured - fetching credentials...")
    self._secrets.update(fetch_credentials_from_secret_manager(project_id, secret_id))
    logger.info("✅ Credentials loaded from Google Secret Manager")
    return True

  def validate(self) -> List[str]:
    """Return a list of problems with the current configuration"""
    problems = []
    for name in ('AMAZON_CLIENT_ID', 'AMAZON_CLIENT_SECRET'):
      if not self.secret(name):
        problems.append(f"Missing Amazon credential: {name}")

    backend = self.get('store.backend', 'supabase')
    if backend == 'supabase':
      if not self.secret('SUPABASE_URL'):
        problems.append("Missing SUPABASE_URL for the supabase store")
      if not (self.secret('SUPABASE_SERVICE_ROLE_KEY') or self.secret('SUPABASE_ANON_KEY')):
        problems.append("Missing SUPABASE_SERVICE_ROLE_KEY for the supabase store")
    elif backend != 'memory':
      problems.append(f"Unknown store backend: {backend}")

    if not self.secret('ENCRYPTION_KEY'):
      problems.append("Missing ENCRYPTION_KEY for token encryption")

    region = str(self.get('api.region', 'NA')).upper()
    if region not in ('NA', 'EU', 'FE'):
      problems.append(f"Invalid api.region: {region}")

    redirect_uri = self.get('amazon.redirect_uri')
    if redirect_uri and not str(redirect_uri).startswith('https://'):
      problems.append("amazon.redirect_uri must use https")

    for problem in problems:
      logger.warning(f"Config check: {problem}")
    return problems


# ============================================================================
# GOOGLE SECRET MANAGER HELPER
# ============================================================================

def fetch_credentials_from_secret_manager(project_id: str, secret_id: str,
                                          client=None) -> Dict[str, str]:
  """
  Fetch credentials from Google Secret Manager

  Args:
    project_id: GCP project ID
    secret_id: Secret name in Secret Manager
    client: Optional SecretManagerServiceClient (created when omitted)

  Returns:
    Dictionary with credential keys (AMAZON_CLIENT_ID, etc.)

  Raises:
    ValueError: If the secret is not JSON or misses required keys
  """
  logger.info(f"Fetching credentials from Google Secret Manager...")
  logger.info(f"  Project: {project_id}")
  logger.info(f"  Secret: {secret_id}")

  if client is None:
    from google.cloud import secretmanager
    client = secretmanager.SecretManagerServiceClient()

  name = f"projects/{project_id}/secrets/{secret_id}/versions/latest"
  response = client.access_secret_version(request={"name": name})
  secret_string = response.payload.data.decode('UTF-8')

  try:
    credentials = json.loads(secret_string)
  except json.JSONDecodeError as e:
    logger.error(f"Secret '{secret_id}' is not valid JSON: {e}")
    raise ValueError(f"Invalid JSON in secret '{secret_id}'") from e

  if not isinstance(credentials, dict):
    raise ValueError(f"Secret '{secret_id}' must be a JSON object")

  missing_keys = [key for key in REQUIRED_SECRET_KEYS if not credentials.get(key)]
  if missing_keys:
    raise ValueError(
      f"Secret '{secret_id}' is missing required keys: {', '.join(missing_keys)}. "
      f"Required keys: {', '.join(REQUIRED_SECRET_KEYS)}"
    )

  logger.info("✅ Successfully fetched credentials from Secret Manager")
  for key in SECRET_KEYS:
    if key in credentials:
      logger.debug(f"  {key}: {mask(str(credentials[key]))}")

  return {k: str(v) for k, v in credentials.items() if v is not None}
