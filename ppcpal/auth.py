"""
Login with Amazon OAuth and connection token lifecycle
======================================================

Covers the authorization URL / state round trip, code exchange, token
refresh, and keeping the ``amazon_connections`` rows' encrypted tokens and
status current.
"""

import base64
import json
import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import requests

from .api import ENDPOINTS, AmazonAdsAPI
from .crypto import TokenCipher
from .exceptions import AmazonApiError, AuthenticationError, TokenRefreshError
from .models import Connection, TokenSet, utcnow
from .store import Store

logger = logging.getLogger(__name__)

TOKEN_URL = "https://api.amazon.com/auth/o2/token"
AUTHORIZE_URL = "https://www.amazon.com/ap/oa"
OAUTH_SCOPE = "advertising::campaign_management"

REFRESH_BUFFER_SECONDS = 5 * 60
STATE_MAX_AGE_SECONDS = 60 * 60

NO_PROFILE_ID = 'setup_required_no_profiles_found'
NO_PROFILE_NAME = 'Setup Required - No Advertising Profiles'

NA_MARKETPLACES = {'ATVPDKIKX0DER', 'A2EUQ1WTGCTBG2', 'A1AM78C64UM0Y8', 'US', 'CA', 'MX', 'BR'}
FE_MARKETPLACES = {'A1VC38T7YXB528', 'A39IBJ37TRP1C6', 'A19VAU5U5O7RUS', 'JP', 'AU', 'SG'}


def region_for_marketplace(marketplace_id: Optional[str]) -> str:
  """NA / EU / FE advertising region for a marketplace id or country code"""
  value = (marketplace_id or '').strip().upper()
  if value in NA_MARKETPLACES:
    return 'NA'
  if value in FE_MARKETPLACES:
    return 'FE'
  return 'EU'


# ============================================================================
# OAUTH PRIMITIVES
# ============================================================================

def encode_state(user_id: str, redirect_uri: str, now: Optional[datetime] = None) -> str:
  now = now or utcnow()
  payload = {
    'user_id': user_id,
    'redirect_uri': redirect_uri,
    'timestamp': int(now.timestamp() * 1000),
  }
  return base64.b64encode(json.dumps(payload).encode('utf-8')).decode('ascii')


def decode_state(state: str, now: Optional[datetime] = None,
                 max_age_seconds: int = STATE_MAX_AGE_SECONDS) -> Dict[str, Any]:
  """Decode and validate an OAuth state parameter"""
  try:
    data = json.loads(base64.b64decode(state.encode('ascii')).decode('utf-8'))
  except (ValueError, UnicodeError) as e:
    raise AuthenticationError("Invalid OAuth state parameter") from e

  if not isinstance(data, dict) or not data.get('user_id'):
    raise AuthenticationError("OAuth state is missing the user id")

  timestamp = data.get('timestamp')
  if timestamp is not None and max_age_seconds:
    age = (now or utcnow()).timestamp() - float(timestamp) / 1000
    if age > max_age_seconds:
      raise AuthenticationError("OAuth state has expired - please restart the connection flow")
  return data


def build_authorization_url(client_id: str, redirect_uri: str, user_id: str,
                            now: Optional[datetime] = None) -> Dict[str, str]:
  """Login with Amazon consent URL for the advertising scope"""
  if not client_id:
    raise AuthenticationError("AMAZON_CLIENT_ID is not configured")
  if not redirect_uri or not redirect_uri.startswith('https://'):
    raise AuthenticationError("redirect_uri must be an https URL")

  state = encode_state(user_id, redirect_uri, now)
  params = {
    'client_id': client_id,
    'scope': OAUTH_SCOPE,
    'response_type': 'code',
    'redirect_uri': redirect_uri,
    'state': state,
  }
  return {'auth_url': f"{AUTHORIZE_URL}?{urlencode(params)}", 'state': state}


def _token_request(payload: Dict[str, str], session: Optional[requests.Session] = None) -> Dict[str, Any]:
  http = session or requests
  logger.debug(f"POST {TOKEN_URL} grant_type={payload.get('grant_type')}")
  try:
    response = http.post(TOKEN_URL, data=payload, timeout=30)
  except requests.exceptions.RequestException as e:
    raise AuthenticationError(f"Token request failed: {e}") from e

  if response.status_code != 200:
    logger.error(f"Amazon auth error response ({response.status_code}): {response.text[:200]}")
    raise AuthenticationError(f"Token request rejected: {response.status_code} {response.text[:200]}")

  try:
    data = response.json()
  except ValueError as e:
    raise AuthenticationError("Invalid token response from Amazon") from e
  if not data.get('access_token'):
    raise AuthenticationError("Token response did not include an access token")
  return data


def exchange_authorization_code(code: str, redirect_uri: str, client_id: str, client_secret: str,
                                session: Optional[requests.Session] = None,
                                now: Optional[datetime] = None) -> TokenSet:
  data = _token_request({
    'grant_type': 'authorization_code',
    'code': code,
    'redirect_uri': redirect_uri,
    'client_id': client_id,
    'client_secret': client_secret,
  }, session)
  logger.info("Exchanged authorization code for tokens")
  return TokenSet.from_response(data, now=now)


def refresh_access_token(refresh_token: str, client_id: str, client_secret: str,
                         session: Optional[requests.Session] = None,
                         now: Optional[datetime] = None) -> TokenSet:
  data = _token_request({
    'grant_type': 'refresh_token',
    'refresh_token': refresh_token,
    'client_id': client_id,
    'client_secret': client_secret,
  }, session)
  return TokenSet.from_response(data, previous_refresh_token=refresh_token, now=now)


# ============================================================================
# CONNECTION SERVICE
# ============================================================================

class ConnectionService:
  """Creates, refreshes and hands out API clients for stored connections"""

  def __init__(self, store: Store, cipher: TokenCipher, client_id: str, client_secret: str,
               session: Optional[requests.Session] = None, api_options: Optional[Dict] = None):
    self.store = store
    self.cipher = cipher
    self.client_id = client_id
    self.client_secret = client_secret
    self.session = session
    self.api_options = api_options or {}
    self._callbacks_in_flight = set()
    self._lock = threading.Lock()

  @classmethod
  def from_config(cls, config, store: Store) -> 'ConnectionService':
    return cls(
      store=store,
      cipher=TokenCipher(config.secret('ENCRYPTION_KEY')),
      client_id=config.secret('AMAZON_CLIENT_ID'),
      client_secret=config.secret('AMAZON_CLIENT_SECRET'),
      api_options={
        'max_requests_per_second': config.get('api.max_requests_per_second'),
        'timeout': config.get('api.timeout', 30),
      },
    )

  def _now(self) -> datetime:
    return utcnow()

  def get_connection(self, connection_id: str) -> Optional[Connection]:
    row = self.store.get('amazon_connections', {'id': connection_id})
    return Connection.from_row(row) if row else None

  def active_connections(self, profile_id: Optional[str] = None) -> List[Connection]:
    filters = {'status': 'active'}
    if profile_id:
      filters['profile_id'] = profile_id
    return [Connection.from_row(r) for r in self.store.select('amazon_connections', filters)]

  # ------------------------------------------------------------------
  # OAuth callback
  # ------------------------------------------------------------------

  def complete_oauth(self, code: str, state: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Finish the OAuth flow: exchange the code, pick a profile, store the connection"""
    if not code or not state:
      raise AuthenticationError("Missing authorization code or state")

    request_key = f"{code}-{state}"
    with self._lock:
      if request_key in self._callbacks_in_flight:
        logger.warning("Duplicate OAuth callback ignored while the first is in progress")
        return {'success': False, 'duplicate': True, 'message': 'Callback already being processed'}
      self._callbacks_in_flight.add(request_key)

    try:
      return self._complete_oauth(code, state, now or self._now())
    finally:
      with self._lock:
        self._callbacks_in_flight.discard(request_key)

  def _complete_oauth(self, code: str, state: str, now: datetime) -> Dict[str, Any]:
    state_data = decode_state(state, now)
    user_id = state_data['user_id']
    redirect_uri = state_data.get('redirect_uri', '')

    tokens = exchange_authorization_code(code, redirect_uri, self.client_id, self.client_secret,
                                         self.session, now)

    api = AmazonAdsAPI(self.client_id, profile_id='', access_token=tokens.access_token,
                       session=self.session, **self._api_kwargs())
    try:
      profiles = api.list_profiles()
    except AmazonApiError as e:
      logger.warning(f"Profile lookup failed after token exchange: {e}")
      profiles = []
    logger.info(f"Found {len(profiles)} advertising profiles for user {user_id}")

    if profiles:
      profile = profiles[0]
      profile_id = str(profile.get('profileId'))
      account = profile.get('accountInfo') or {}
      profile_name = account.get('name') or f"Profile {profile_id}"
      marketplace_id = profile.get('countryCode') or account.get('marketplaceStringId')
      status = 'active'
      reason = None
    else:
      profile_id = NO_PROFILE_ID
      profile_name = NO_PROFILE_NAME
      marketplace_id = 'US'
      status = 'setup_required'
      reason = 'No advertising profiles found - create one in Amazon Ads console'

    region = region_for_marketplace(marketplace_id)
    rows = self.store.upsert('amazon_connections', {
      'user_id': user_id,
      'profile_id': profile_id,
      'profile_name': profile_name,
      'marketplace_id': marketplace_id,
      'region': region,
      'advertising_api_endpoint': ENDPOINTS[region],
      'access_token': self.cipher.encrypt(tokens.access_token),
      'refresh_token': self.cipher.encrypt(tokens.refresh_token),
      'token_expires_at': tokens.expires_at,
      'status': status,
      'setup_required_reason': reason,
      'updated_at': now,
    }, on_conflict='user_id,profile_id')
    row = rows[0] if rows else self.store.get('amazon_connections',
                                              {'user_id': user_id, 'profile_id': profile_id})

    message = (f"Connected to {profile_name}" if profiles
               else "Connected, but no advertising profiles were found")
    logger.info(message)
    return {
      'success': True,
      'profile_count': len(profiles),
      'connection': {
        'id': row['id'],
        'profile_name': profile_name,
        'marketplace_id': marketplace_id,
        'status': status,
        'needs_setup': not profiles,
      },
      'message': message,
    }

  # ------------------------------------------------------------------
  # Token refresh
  # ------------------------------------------------------------------

  def refresh_connection(self, connection_id: str, now: Optional[datetime] = None) -> TokenSet:
    """Refresh a connection's access token and persist the result"""
    now = now or self._now()
    connection = self.get_connection(connection_id)
    if connection is None:
      raise TokenRefreshError('CONNECTION_NOT_FOUND', f"Connection {connection_id} not found")
    if not (self.client_id and self.client_secret):
      raise TokenRefreshError('MISSING_AMAZON_CREDENTIALS', "Amazon client credentials are not configured")

    try:
      refresh_token = self.cipher.decrypt(connection.refresh_token)
    except ValueError as e:
      raise TokenRefreshError('TOKEN_REFRESH_ERROR', str(e)) from e
    if not refresh_token:
      self._mark_expired(connection_id, now)
      raise TokenRefreshError('REFRESH_FAILED', "Connection has no refresh token")

    try:
      tokens = refresh_access_token(refresh_token, self.client_id, self.client_secret, self.session, now)
    except AuthenticationError as e:
      logger.error(f"Token refresh failed for connection {connection_id}: {e}")
      self._mark_expired(connection_id, now)
      raise TokenRefreshError('REFRESH_FAILED', str(e)) from e

    self.store.update('amazon_connections', {
      'access_token': self.cipher.encrypt(tokens.access_token),
      'refresh_token': self.cipher.encrypt(tokens.refresh_token),
      'token_expires_at': tokens.expires_at,
      'status': 'active',
      'setup_required_reason': None,
      'updated_at': now,
    }, {'id': connection_id})
    logger.info(f"Refreshed token for connection {connection_id} (profile {connection.profile_id})")
    return tokens

  def _mark_expired(self, connection_id: str, now: datetime) -> None:
    self.store.update('amazon_connections', {
      'status': 'expired',
      'setup_required_reason': 'Token refresh failed - please reconnect',
      'updated_at': now,
    }, {'id': connection_id})

  def ensure_valid_token(self, connection: Connection, now: Optional[datetime] = None) -> str:
    """Access token for a connection, refreshed when it expires within 5 minutes"""
    now = now or self._now()
    tokens = connection.token_set
    if tokens is None or tokens.expires_within(REFRESH_BUFFER_SECONDS, now):
      logger.info(f"Token for profile {connection.profile_id} expires soon, refreshing")
      return self.refresh_connection(connection.id, now).access_token
    try:
      return self.cipher.decrypt(tokens.access_token)
    except ValueError as e:
      logger.error(f"Stored access token for connection {connection.id} is unreadable: {e}")
      raise TokenRefreshError('TOKEN_DECRYPT_ERROR', str(e)) from e

  def refresh_expiring(self, window_minutes: int = 45, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Refresh every active connection expiring inside the window"""
    start_time = time.time()
    now = now or self._now()
    logger.info("=== Refreshing Expiring Tokens ===")

    threshold = now + timedelta(minutes=window_minutes)
    rows = self.store.select('amazon_connections', {
      'status': 'active',
      'token_expires_at__lte': threshold,
    })
    results = {'total': len(rows), 'refreshed': 0, 'failed': 0, 'errors': []}

    for row in rows:
      try:
        self.refresh_connection(row['id'], now)
        results['refreshed'] += 1
        self.store.insert('token_refresh_log', {
          'connection_id': row['id'], 'profile_id': row.get('profile_id'), 'status': 'success',
        })
      except TokenRefreshError as e:
        results['failed'] += 1
        results['errors'].append({'connection_id': row['id'], 'code': e.code, 'error': str(e)})
        self.store.insert('token_refresh_log', {
          'connection_id': row['id'], 'profile_id': row.get('profile_id'),
          'status': 'failed', 'error_message': str(e),
        })

    results['execution_time_seconds'] = round(time.time() - start_time, 2)
    logger.info(f"Token refresh complete: {results['refreshed']}/{results['total']} refreshed")
    return results

  # ------------------------------------------------------------------
  # API clients
  # ------------------------------------------------------------------

  def _api_kwargs(self) -> Dict[str, Any]:
    return {k: v for k, v in self.api_options.items() if v is not None}

  def api_for(self, connection: Connection, now: Optional[datetime] = None) -> AmazonAdsAPI:
    """Authenticated API client for a connection; 401s trigger a refresh"""
    access_token = self.ensure_valid_token(connection, now)
    return AmazonAdsAPI(
      self.client_id,
      profile_id=connection.profile_id,
      access_token=access_token,
      region=connection.region or region_for_marketplace(connection.marketplace_id),
      base_url=connection.advertising_api_endpoint,
      token_refresher=lambda: self.refresh_connection(connection.id).access_token,
      session=self.session,
      **self._api_kwargs()
    )

  def api_for_profile(self, profile_id: str, now: Optional[datetime] = None) -> AmazonAdsAPI:
    connections = self.active_connections(profile_id)
    if not connections:
      raise AuthenticationError(f"No active connection for profile {profile_id}")
    return self.api_for(connections[0], now)
