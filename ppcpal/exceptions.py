"""Exception hierarchy shared by every PPC Pal job."""

from typing import Optional


class PPCPalError(Exception):
  """Base class for all PPC Pal errors"""
  pass


class ConfigurationError(PPCPalError):
  """Custom exception for configuration errors"""
  pass


class AuthenticationError(PPCPalError):
  """Amazon Ads API authentication error"""
  pass


class TokenRefreshError(AuthenticationError):
  """Token refresh failed for a stored connection"""

  def __init__(self, code: str, message: str):
    super().__init__(message)
    self.code = code


class AmazonApiError(PPCPalError):
  """Non-retryable error response from the Amazon Ads API"""

  def __init__(self, message: str, status_code: Optional[int] = None,
               request_id: Optional[str] = None, code: Optional[str] = None):
    super().__init__(message)
    self.status_code = status_code
    self.request_id = request_id
    self.code = code


class ReportError(AmazonApiError):
  """Report creation, processing or download failed"""
  pass


class StoreError(PPCPalError):
  """Persistence layer failure"""

  def __init__(self, message: str, table: Optional[str] = None,
               operation: Optional[str] = None):
    super().__init__(message)
    self.table = table
    self.operation = operation
