"""Data classes shared across the API client, sync pipeline and jobs."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
  return datetime.now(timezone.utc)


def parse_timestamp(value) -> Optional[datetime]:
  """Parse an ISO timestamp (or pass a datetime through) as aware UTC"""
  if value is None or value == '':
    return None
  if isinstance(value, datetime):
    dt = value
  else:
    text = str(value).replace('Z', '+00:00')
    dt = datetime.fromisoformat(text)
  if dt.tzinfo is None:
    dt = dt.replace(tzinfo=timezone.utc)
  return dt


def to_micros(amount) -> int:
  return int(round(float(amount or 0) * 1_000_000))


def from_micros(micros) -> float:
  return round(float(micros or 0) / 1_000_000, 2)


# ============================================================================
# AUTH
# ============================================================================

@dataclass
class TokenSet:
  """OAuth tokens returned by Login with Amazon"""
  access_token: str
  refresh_token: Optional[str]
  expires_at: datetime
  token_type: str = 'bearer'

  @classmethod
  def from_response(cls, data: Dict[str, Any], previous_refresh_token: Optional[str] = None,
                    now: Optional[datetime] = None) -> 'TokenSet':
    now = now or utcnow()
    access_token = data['access_token']
    if isinstance(access_token, str):
      access_token = access_token.strip()
    return cls(
      access_token=access_token,
      refresh_token=data.get('refresh_token') or previous_refresh_token,
      expires_at=now + timedelta(seconds=int(data.get('expires_in', 3600))),
      token_type=data.get('token_type', 'bearer'),
    )

  def expires_within(self, seconds: int, now: Optional[datetime] = None) -> bool:
    return (now or utcnow()) >= self.expires_at - timedelta(seconds=seconds)


@dataclass
class Connection:
  """A user's link to one Amazon Ads advertising profile"""
  id: str
  user_id: str
  profile_id: str
  status: str
  marketplace_id: Optional[str] = None
  profile_name: Optional[str] = None
  region: str = 'NA'
  access_token: Optional[str] = None
  refresh_token: Optional[str] = None
  token_expires_at: Optional[datetime] = None
  advertising_api_endpoint: Optional[str] = None
  setup_required_reason: Optional[str] = None

  @classmethod
  def from_row(cls, row: Dict[str, Any]) -> 'Connection':
    return cls(
      id=str(row['id']),
      user_id=str(row.get('user_id') or ''),
      profile_id=str(row.get('profile_id') or ''),
      status=row.get('status') or 'pending',
      marketplace_id=row.get('marketplace_id'),
      profile_name=row.get('profile_name'),
      region=(row.get('region') or 'NA').upper(),
      access_token=row.get('access_token'),
      refresh_token=row.get('refresh_token'),
      token_expires_at=parse_timestamp(row.get('token_expires_at')),
      advertising_api_endpoint=row.get('advertising_api_endpoint'),
      setup_required_reason=row.get('setup_required_reason'),
    )

  @property
  def is_active(self) -> bool:
    return self.status == 'active'

  @property
  def token_set(self) -> Optional[TokenSet]:
    if self.token_expires_at is None:
      return None
    return TokenSet(self.access_token, self.refresh_token, self.token_expires_at)


# ============================================================================
# ENTITIES
# ============================================================================

@dataclass
class Campaign:
  """Sponsored Products campaign"""
  campaign_id: str
  name: str
  state: str
  daily_budget: float
  targeting_type: str = ''
  campaign_type: str = 'sponsoredProducts'
  start_date: Optional[str] = None
  bidding: Dict[str, Any] = field(default_factory=dict)

  @classmethod
  def from_api(cls, item: Dict[str, Any]) -> 'Campaign':
    budget = item.get('budget') or {}
    return cls(
      campaign_id=str(item.get('campaignId')),
      name=item.get('name', ''),
      state=str(item.get('state', '')),
      daily_budget=float(budget.get('budget', item.get('dailyBudget', 0)) or 0),
      targeting_type=item.get('targetingType', ''),
      start_date=item.get('startDate'),
      bidding=item.get('dynamicBidding') or {},
    )


@dataclass
class AdGroup:
  """Ad Group data structure"""
  ad_group_id: str
  campaign_id: str
  name: str
  state: str
  default_bid: float

  @classmethod
  def from_api(cls, item: Dict[str, Any]) -> 'AdGroup':
    return cls(
      ad_group_id=str(item.get('adGroupId')),
      campaign_id=str(item.get('campaignId')),
      name=item.get('name', ''),
      state=str(item.get('state', '')),
      default_bid=float(item.get('defaultBid', 0) or 0),
    )


@dataclass
class Keyword:
  """Keyword data structure"""
  keyword_id: str
  ad_group_id: str
  campaign_id: str
  keyword_text: str
  match_type: str
  state: str
  bid: float

  @classmethod
  def from_api(cls, item: Dict[str, Any]) -> 'Keyword':
    return cls(
      keyword_id=str(item.get('keywordId')),
      ad_group_id=str(item.get('adGroupId')),
      campaign_id=str(item.get('campaignId')),
      keyword_text=item.get('keywordText', ''),
      match_type=str(item.get('matchType', '')),
      state=str(item.get('state', '')),
      bid=float(item.get('bid', 0) or 0),
    )


@dataclass
class Target:
  """Product / auto targeting clause"""
  target_id: str
  ad_group_id: str
  campaign_id: str
  expression: List[Dict[str, Any]]
  expression_type: str
  state: str
  bid: float

  @classmethod
  def from_api(cls, item: Dict[str, Any]) -> 'Target':
    return cls(
      target_id=str(item.get('targetId')),
      ad_group_id=str(item.get('adGroupId')),
      campaign_id=str(item.get('campaignId')),
      expression=item.get('expression') or [],
      expression_type=str(item.get('expressionType', '')),
      state=str(item.get('state', '')),
      bid=float(item.get('bid', 0) or 0),
    )


# ============================================================================
# API RESULTS
# ============================================================================

@dataclass
class ApiResponse:
  """Outcome of a single Amazon Ads API call"""
  success: bool
  data: Any = None
  error: Optional[str] = None
  status_code: Optional[int] = None
  request_id: Optional[str] = None

  def to_dict(self) -> Dict[str, Any]:
    return {
      'success': self.success,
      'data': self.data,
      'error': self.error,
      'status_code': self.status_code,
      'request_id': self.request_id,
    }
