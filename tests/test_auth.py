"""OAuth state, code exchange, token refresh and connection lifecycle."""

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from conftest import NOW, FakeResponse, FakeSession
from ppcpal.auth import (ConnectionService, build_authorization_url, decode_state, encode_state,
                         region_for_marketplace)
from ppcpal.crypto import TokenCipher
from ppcpal.exceptions import AuthenticationError, TokenRefreshError
from ppcpal.store import MemoryStore

REDIRECT = 'https://app.example.com/callback'


def _token_body(access='Atza|new', refresh='Atzr|new', expires_in=3600):
  return {'access_token': access, 'refresh_token': refresh, 'expires_in': expires_in, 'token_type': 'bearer'}


def _service(store, responses):
  session = FakeSession(responses)
  service = ConnectionService(store, TokenCipher('test-key'), 'client-id', 'client-secret', session=session)
  return service, session


def test_region_for_marketplace():
  assert region_for_marketplace('ATVPDKIKX0DER') == 'NA'
  assert region_for_marketplace('JP') == 'FE'
  assert region_for_marketplace('A1PA6795UKMFR9') == 'EU'
  assert region_for_marketplace(None) == 'EU'


def test_state_round_trip():
  state = encode_state('user-1', REDIRECT, NOW)
  data = decode_state(state, NOW + timedelta(minutes=5))
  assert data['user_id'] == 'user-1'
  assert data['redirect_uri'] == REDIRECT


def test_expired_state_rejected():
  state = encode_state('user-1', REDIRECT, NOW)
  with pytest.raises(AuthenticationError, match='expired'):
    decode_state(state, NOW + timedelta(hours=2))


def test_garbage_state_rejected():
  with pytest.raises(AuthenticationError):
    decode_state('%%%not-base64%%%', NOW)


def test_authorization_url():
  result = build_authorization_url('client-id', REDIRECT, 'user-1', NOW)
  query = parse_qs(urlparse(result['auth_url']).query)
  assert query['scope'] == ['advertising::campaign_management']
  assert query['redirect_uri'] == [REDIRECT]
  assert query['state'] == [result['state']]


def test_authorization_url_requires_https():
  with pytest.raises(AuthenticationError):
    build_authorization_url('client-id', 'http://insecure', 'user-1')


def test_complete_oauth_stores_encrypted_tokens():
  store = MemoryStore()
  profiles = [{'profileId': 555, 'countryCode': 'UK', 'accountInfo': {'name': 'Brand EU'}}]
  service, session = _service(store, [FakeResponse(200, _token_body()), FakeResponse(200, profiles)])

  result = service.complete_oauth('auth-code', encode_state('user-1', REDIRECT, NOW), NOW)

  assert result['success'] and result['profile_count'] == 1
  row = store.get('amazon_connections', {'user_id': 'user-1'})
  assert row['profile_id'] == '555'
  assert row['region'] == 'EU'
  assert row['status'] == 'active'
  assert row['access_token'] != 'Atza|new'
  assert service.cipher.decrypt(row['access_token']) == 'Atza|new'
  assert session.calls[0]['data']['grant_type'] == 'authorization_code'
  assert session.calls[0]['data']['redirect_uri'] == REDIRECT


def test_complete_oauth_without_profiles_needs_setup():
  store = MemoryStore()
  service, _ = _service(store, [FakeResponse(200, _token_body()), FakeResponse(200, [])])
  result = service.complete_oauth('auth-code', encode_state('user-1', REDIRECT, NOW), NOW)
  assert result['connection']['needs_setup']
  assert store.get('amazon_connections', {'user_id': 'user-1'})['status'] == 'setup_required'


def test_complete_oauth_rejected_code():
  service, _ = _service(MemoryStore(), [FakeResponse(400, {'error': 'invalid_grant'})])
  with pytest.raises(AuthenticationError):
    service.complete_oauth('bad', encode_state('user-1', REDIRECT, NOW), NOW)


def _stored_connection(store, cipher, expires_at, refresh='Atzr|old'):
  return store.insert('amazon_connections', {
    'user_id': 'user-1', 'profile_id': '111', 'status': 'active', 'region': 'NA',
    'access_token': cipher.encrypt('Atza|old'), 'refresh_token': cipher.encrypt(refresh),
    'token_expires_at': expires_at,
  })[0]


def test_refresh_connection_persists_new_tokens():
  store = MemoryStore()
  service, session = _service(store, [FakeResponse(200, _token_body(refresh=None))])
  row = _stored_connection(store, service.cipher, NOW + timedelta(minutes=2))

  tokens = service.refresh_connection(row['id'], NOW)

  assert tokens.access_token == 'Atza|new'
  assert tokens.refresh_token == 'Atzr|old'
  stored = store.get('amazon_connections', {'id': row['id']})
  assert service.cipher.decrypt(stored['access_token']) == 'Atza|new'
  assert session.calls[0]['data']['refresh_token'] == 'Atzr|old'


def test_refresh_failure_marks_connection_expired():
  store = MemoryStore()
  service, _ = _service(store, [FakeResponse(400, {'error': 'invalid_grant'})])
  row = _stored_connection(store, service.cipher, NOW)

  with pytest.raises(TokenRefreshError) as excinfo:
    service.refresh_connection(row['id'], NOW)
  assert excinfo.value.code == 'REFRESH_FAILED'
  assert store.get('amazon_connections', {'id': row['id']})['status'] == 'expired'


def test_refresh_unknown_connection():
  service, _ = _service(MemoryStore(), [])
  with pytest.raises(TokenRefreshError) as excinfo:
    service.refresh_connection('missing', NOW)
  assert excinfo.value.code == 'CONNECTION_NOT_FOUND'


def test_ensure_valid_token_uses_stored_token_when_fresh():
  store = MemoryStore()
  service, session = _service(store, [])
  row = _stored_connection(store, service.cipher, NOW + timedelta(hours=1))
  connection = service.get_connection(row['id'])
  assert service.ensure_valid_token(connection, NOW) == 'Atza|old'
  assert session.calls == []


def test_ensure_valid_token_rejects_token_from_rotated_key():
  store = MemoryStore()
  row = _stored_connection(store, TokenCipher('old-key'), NOW + timedelta(hours=1))
  service, session = _service(store, [])
  with pytest.raises(TokenRefreshError) as excinfo:
    service.ensure_valid_token(service.get_connection(row['id']), NOW)
  assert excinfo.value.code == 'TOKEN_DECRYPT_ERROR'
  assert session.calls == []


def test_refresh_expiring_only_touches_window():
  store = MemoryStore()
  service, _ = _service(store, [FakeResponse(200, _token_body())])
  soon = _stored_connection(store, service.cipher, NOW + timedelta(minutes=20))
  _stored_connection(store, service.cipher, NOW + timedelta(hours=3))

  results = service.refresh_expiring(window_minutes=45, now=NOW)

  assert results['total'] == 1 and results['refreshed'] == 1
  log = store.select('token_refresh_log')
  assert [r['connection_id'] for r in log] == [soon['id']]


def test_api_for_profile_requires_active_connection():
  service, _ = _service(MemoryStore(), [])
  with pytest.raises(AuthenticationError):
    service.api_for_profile('999', NOW)
