"""Token encryption utilities for stored OAuth tokens."""

import base64
import hashlib
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .exceptions import ConfigurationError

IV_LENGTH = 12


class TokenCipher:
  """AES-256-GCM cipher keyed by SHA-256 of the configured secret.

  Encrypted values look like ``<base64 iv>:<base64 ciphertext>``. Values
  without a ``:`` are treated as legacy plaintext and returned unchanged by
  :meth:`decrypt`.
  """

  def __init__(self, secret: str):
    if not secret:
      raise ConfigurationError("ENCRYPTION_KEY is required to store tokens")
    self._aesgcm = AESGCM(hashlib.sha256(secret.encode('utf-8')).digest())

  def encrypt(self, text: Optional[str]) -> Optional[str]:
    if not text:
      return text
    iv = os.urandom(IV_LENGTH)
    data = self._aesgcm.encrypt(iv, text.encode('utf-8'), None)
    return f"{base64.b64encode(iv).decode()}:{base64.b64encode(data).decode()}"

  def decrypt(self, value: Optional[str]) -> Optional[str]:
    if not value or ':' not in value:
      return value
    iv_b64, data_b64 = value.split(':', 1)
    try:
      iv = base64.b64decode(iv_b64)
      data = base64.b64decode(data_b64)
      return self._aesgcm.decrypt(iv, data, None).decode('utf-8')
    except (InvalidTag, ValueError) as e:
      raise ValueError("Stored token could not be decrypted - check ENCRYPTION_KEY") from e
