"""Token encryption at rest."""

import pytest

from ppcpal.crypto import TokenCipher
from ppcpal.exceptions import ConfigurationError


def test_encrypt_decrypt():
  cipher = TokenCipher('encryption-secret')
  encrypted = cipher.encrypt('Atza|token')
  assert encrypted != 'Atza|token'
  assert ':' in encrypted
  assert cipher.decrypt(encrypted) == 'Atza|token'


def test_each_encryption_uses_a_fresh_iv():
  cipher = TokenCipher('encryption-secret')
  assert cipher.encrypt('same') != cipher.encrypt('same')


def test_legacy_plaintext_passes_through():
  assert TokenCipher('k').decrypt('Atzr-legacy-token') == 'Atzr-legacy-token'
  assert TokenCipher('k').decrypt(None) is None


def test_wrong_key_fails():
  encrypted = TokenCipher('one').encrypt('token')
  with pytest.raises(ValueError):
    TokenCipher('two').decrypt(encrypted)


def test_key_required():
  with pytest.raises(ConfigurationError):
    TokenCipher('')
