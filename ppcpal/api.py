"""
Amazon Ads API client
=====================

Sponsored Products v3 entity endpoints, the v3 reporting API and the
profiles endpoint, behind a token-bucket rate limiter with retry logic.
"""

import csv
import gzip
import io
import json
import logging
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from .exceptions import AmazonApiError, AuthenticationError, ReportError
from .models import AdGroup, ApiResponse, Campaign, Keyword, Target

logger = logging.getLogger(__name__)

# ============================================================================
# CONSTANTS
# ============================================================================

ENDPOINTS = {
  "NA": "https://advertising-api.amazon.com",
  "EU": "https://advertising-api-eu.amazon.com",
  "FE": "https://advertising-api-fe.amazon.com",
}

USER_AGENT = "PPCPal-Sync/1.0"

# Amazon Advertising API supports 10 requests/second per profile
MAX_REQUESTS_PER_SECOND = 10

MAX_ATTEMPTS = 4
MAX_BACKOFF_SECONDS = 30
RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}
PAGE_SIZE = 100
BATCH_SIZE = 100

MEDIA_TYPES = {
  'campaign': 'application/vnd.spCampaign.v3+json',
  'adGroup': 'application/vnd.spAdGroup.v3+json',
  'keyword': 'application/vnd.spKeyword.v3+json',
  'target': 'application/vnd.spTargetingClause.v3+json',
  'negativeKeyword': 'application/vnd.spNegativeKeyword.v3+json',
  'campaignNegativeKeyword': 'application/vnd.spCampaignNegativeKeyword.v3+json',
  'report': 'application/vnd.createasyncreportrequest.v3+json',
}

REPORT_ID_PATTERN = re.compile(r'[0-9a-fA-F-]{36}')
MAX_REPORT_DAYS = 90

# kind -> (reportTypeId, groupBy, id filter field, extra filters)
REPORT_DEFINITIONS = {
  'campaigns': ('spCampaigns', ['campaign'], 'campaignId', []),
  'adGroups': ('spCampaigns', ['adGroup'], 'adGroupId', []),
  'keywords': ('spTargeting', ['targeting'], 'keywordId',
               [{'field': 'keywordType', 'values': ['BROAD', 'PHRASE', 'EXACT']}]),
  'targets': ('spTargeting', ['targeting'], 'targetId',
              [{'field': 'keywordType',
                'values': ['TARGETING_EXPRESSION', 'TARGETING_EXPRESSION_PREDEFINED']}]),
  'searchTerms': ('spSearchTerm', ['searchTerm'], None, []),
}


# ============================================================================
# RATE LIMITER
# ============================================================================

class RateLimiter:
  """Rate limiter for API calls with burst support (Token Bucket Algorithm)"""

  def __init__(self, max_per_second: int = MAX_REQUESTS_PER_SECOND, burst_size: int = 3,
               clock: Callable[[], float] = time.monotonic,
               sleep: Callable[[float], None] = time.sleep):
    self.max_per_second = max_per_second
    self.burst_size = burst_size
    self.tokens = float(burst_size)
    self._clock = clock
    self._sleep = sleep
    self.last_update_time = clock()
    self._lock = threading.Lock()

  def wait_if_needed(self) -> float:
    """Block until a token is available; returns the time slept"""
    with self._lock:
      now = self._clock()
      elapsed = now - self.last_update_time
      self.tokens = min(self.burst_size, self.tokens + elapsed * self.max_per_second)
      self.last_update_time = now

      slept = 0.0
      if self.tokens < 1:
        slept = (1 - self.tokens) / self.max_per_second
        self._sleep(slept)
        self.tokens = 1
        self.last_update_time = self._clock()

      self.tokens -= 1
      return slept


# ============================================================================
# HELPERS
# ============================================================================

def parse_error(body: Any) -> str:
  """Pull a readable message out of an Amazon Ads error body"""
  if body is None or body == '':
    return 'Unknown error'
  data = body
  if isinstance(body, (str, bytes)):
    try:
      data = json.loads(body)
    except ValueError:
      return body.decode('utf-8', 'replace') if isinstance(body, bytes) else body
  if not isinstance(data, dict):
    return str(data)

  if data.get('message'):
    return str(data['message'])
  errors = data.get('errors')
  if isinstance(errors, list) and errors:
    first = errors[0] or {}
    return str(first.get('message') or first.get('errorType') or first)
  if data.get('code'):
    details = data.get('details') or data.get('detail') or ''
    return f"{data['code']}: {details}".strip()
  if data.get('detail'):
    return str(data['detail'])
  return json.dumps(data)[:500]


def parse_multi_status(data: Any, key: str) -> Tuple[List[Dict], List[Dict]]:
  """Split a v3 multi-status body into (success, error) item lists"""
  if not isinstance(data, dict):
    return [], []
  section = data.get(key) or {}
  return list(section.get('success') or []), list(section.get('error') or [])


def _item_errors(error_items: List[Dict]) -> str:
  messages = []
  for item in error_items:
    for err in item.get('errors') or [item]:
      value = err.get('errorValue') or {}
      if isinstance(value, dict) and value:
        inner = next(iter(value.values()))
        if isinstance(inner, dict) and inner.get('message'):
          messages.append(str(inner['message']))
          continue
      messages.append(str(err.get('message') or err.get('errorType') or err))
  return '; '.join(messages)


@dataclass
class ReportRequest:
  """One v3 report request"""
  kind: str
  columns: List[str]
  end_date: date
  days: int = 30
  time_unit: str = 'SUMMARY'
  entity_ids: List[str] = field(default_factory=list)
  name: Optional[str] = None

  @property
  def start_date(self) -> date:
    return self.end_date - timedelta(days=min(self.days, MAX_REPORT_DAYS))

  @property
  def report_columns(self) -> List[str]:
    """SUMMARY reports reject the date column"""
    if self.time_unit.upper() == 'SUMMARY':
      return [c for c in self.columns if c != 'date']
    return list(self.columns)

  def to_payload(self) -> Dict[str, Any]:
    if self.kind not in REPORT_DEFINITIONS:
      raise ReportError(f"Unsupported report kind: {self.kind}")
    report_type_id, group_by, id_field, extra_filters = REPORT_DEFINITIONS[self.kind]

    filters = []
    if id_field and self.entity_ids:
      filters.append({'field': id_field, 'values': [str(i) for i in self.entity_ids]})
    filters.extend(extra_filters)

    configuration = {
      'adProduct': 'SPONSORED_PRODUCTS',
      'reportTypeId': report_type_id,
      'groupBy': group_by,
      'columns': self.report_columns,
      'timeUnit': self.time_unit,
      'format': 'GZIP_JSON',
    }
    if filters:
      configuration['filters'] = filters

    return {
      'name': self.name or f"{self.kind}_{self.start_date.isoformat()}_{self.end_date.isoformat()}",
      'startDate': self.start_date.isoformat(),
      'endDate': self.end_date.isoformat(),
      'configuration': configuration,
    }


# ============================================================================
# AMAZON ADS API CLIENT
# ============================================================================

class AmazonAdsAPI:
  """Amazon Advertising API client with retry logic and rate limiting"""

  def __init__(self, client_id: str, profile_id: str, access_token: str,
               region: str = "NA", base_url: Optional[str] = None,
               token_refresher: Optional[Callable[[], str]] = None,
               max_requests_per_second: int = None,
               session: requests.Session = None,
               sleep: Callable[[float], None] = time.sleep,
               timeout: int = 30):
    if not client_id:
      raise AuthenticationError("AMAZON_CLIENT_ID is required for Amazon Ads API calls")
    self.client_id = client_id.strip()
    self.profile_id = str(profile_id)
    self.access_token = access_token
    self.region = (region or 'NA').upper()
    self.base_url = (base_url or ENDPOINTS.get(self.region, ENDPOINTS["NA"])).rstrip('/')
    self.token_refresher = token_refresher
    self.sleep = sleep
    self.timeout = timeout
    self.rate_limiter = RateLimiter(max_requests_per_second or MAX_REQUESTS_PER_SECOND, sleep=sleep)
    # Use requests.Session for connection pooling
    self.session = session or requests.Session()

  def _headers(self, content_type: Optional[str] = None, accept: Optional[str] = None,
               scoped: bool = True) -> Dict[str, str]:
    headers = {
      "Authorization": f"Bearer {self.access_token}",
      "Amazon-Advertising-API-ClientId": self.client_id,
      "Content-Type": content_type or "application/json",
      "Accept": accept or content_type or "application/json",
      "User-Agent": USER_AGENT,
    }
    if scoped:
      headers["Amazon-Advertising-API-Scope"] = self.profile_id
    return headers

  def _backoff(self, attempt: int, response: Optional[requests.Response] = None) -> float:
    delay = min(2 ** attempt, MAX_BACKOFF_SECONDS)
    if response is not None:
      retry_after = response.headers.get('Retry-After')
      if retry_after:
        try:
          delay = min(float(retry_after), MAX_BACKOFF_SECONDS)
        except ValueError:
          pass
    return delay

  def _request(self, method: str, endpoint: str, content_type: Optional[str] = None,
               accept: Optional[str] = None, scoped: bool = True, **kwargs) -> requests.Response:
    """Make API request with retry logic and rate limiting"""
    url = f"{self.base_url}{endpoint}"
    reauth_attempted = False
    response = None

    for attempt in range(MAX_ATTEMPTS):
      self.rate_limiter.wait_if_needed()
      headers = self._headers(content_type, accept, scoped)
      safe_headers = {k: ('REDACTED' if 'auth' in k.lower() else v) for k, v in headers.items()}
      logger.debug(f"Amazon API {method} {url} (attempt {attempt + 1}/{MAX_ATTEMPTS})")
      logger.debug(f"Request headers: {safe_headers}")

      try:
        response = self.session.request(
          method=method,
          url=url,
          headers=headers,
          timeout=self.timeout,
          **kwargs
        )
      except requests.exceptions.RequestException as e:
        if attempt == MAX_ATTEMPTS - 1:
          logger.error(f"Request exception after {MAX_ATTEMPTS} attempts: {e}")
          raise AmazonApiError(f"Request to {endpoint} failed: {e}") from e
        delay = self._backoff(attempt)
        logger.warning(f"Request exception (attempt {attempt + 1}/{MAX_ATTEMPTS}): {e}; retrying in {delay}s")
        self.sleep(delay)
        continue

      status = response.status_code
      logger.debug(f"Response status: {status}")

      if status in (401, 403) and self.token_refresher and not reauth_attempted:
        logger.info(f"Received {status} from Amazon Ads API; refreshing credentials and retrying")
        self.access_token = self.token_refresher()
        reauth_attempted = True
        continue

      if status in RETRYABLE_STATUS and attempt < MAX_ATTEMPTS - 1:
        delay = self._backoff(attempt, response)
        logger.warning(f"Request failed with {status}, waiting {delay}s before retry")
        self.sleep(delay)
        continue

      if status >= 400:
        logger.error(f"Amazon API error {status} on {method} {url}: {response.text[:1000]}")
      return response

    return response

  def call(self, method: str, endpoint: str, body: Any = None, media_type: Optional[str] = None,
           params: Optional[Dict] = None, scoped: bool = True) -> ApiResponse:
    """Run a request and wrap the outcome in an ApiResponse"""
    kwargs = {}
    if body is not None:
      kwargs['json'] = body
    if params:
      kwargs['params'] = params

    try:
      response = self._request(method, endpoint, content_type=media_type, accept=media_type,
                               scoped=scoped, **kwargs)
    except AmazonApiError as e:
      return ApiResponse(success=False, error=str(e))

    request_id = response.headers.get('x-amz-request-id') or response.headers.get('x-amzn-RequestId')
    try:
      data = response.json() if response.content else None
    except ValueError:
      data = response.text

    if response.status_code >= 400:
      return ApiResponse(success=False, data=data, error=parse_error(data),
                         status_code=response.status_code, request_id=request_id)
    return ApiResponse(success=True, data=data, status_code=response.status_code,
                       request_id=request_id)

  def _mutate(self, method: str, endpoint: str, media_key: str, result_key: str,
              items: List[Dict]) -> ApiResponse:
    result = self.call(method, endpoint, {result_key: items}, MEDIA_TYPES[media_key])
    if not result.success:
      return result
    success, errors = parse_multi_status(result.data, result_key)
    if errors:
      result.success = False
      result.error = _item_errors(errors)
    return result

  # ========================================================================
  # PROFILES
  # ========================================================================

  def list_profiles(self) -> List[Dict[str, Any]]:
    """Advertising profiles visible to the access token"""
    result = self.call('GET', '/v2/profiles', scoped=False)
    if not result.success:
      raise AmazonApiError(f"Failed to list profiles: {result.error}",
                           result.status_code, result.request_id)
    return result.data or []

  def verify_connection(self, sample_size: int = 5) -> Dict[str, Any]:
    """Verify API connectivity by retrieving a small campaign sample"""
    try:
      campaigns = self.list_campaigns(max_items=sample_size)
    except AmazonApiError as e:
      logger.error(f"Connection verification failed: {e}")
      return {'success': False, 'error': str(e), 'profile_id': self.profile_id}

    sample = [
      {'campaignId': c.campaign_id, 'name': c.name, 'state': c.state, 'dailyBudget': c.daily_budget}
      for c in campaigns[:sample_size]
    ]
    logger.info(f"Connection verified for profile {self.profile_id}: {len(sample)} campaigns sampled")
    return {'success': True, 'profile_id': self.profile_id, 'region': self.region, 'sample': sample}

  # ========================================================================
  # ENTITY LISTING
  # ========================================================================

  def _list_all(self, endpoint: str, media_key: str, result_key: str,
                filters: Optional[Dict] = None, max_items: Optional[int] = None) -> List[Dict]:
    """Follow nextToken pagination of a v3 list endpoint"""
    items: List[Dict] = []
    next_token = None
    page = 0

    while True:
      body = {'maxResults': PAGE_SIZE}
      if filters:
        body.update(filters)
      if next_token:
        body['nextToken'] = next_token

      result = self.call('POST', endpoint, body, MEDIA_TYPES[media_key])
      if not result.success:
        raise AmazonApiError(f"Failed to list {result_key}: {result.error}",
                             result.status_code, result.request_id)

      data = result.data or {}
      page += 1
      items.extend(data.get(result_key) or [])
      next_token = data.get('nextToken')
      logger.debug(f"Fetched page {page} of {result_key}: {len(items)} so far")

      if not next_token or (max_items and len(items) >= max_items):
        break

    return items[:max_items] if max_items else items

  @staticmethod
  def _campaign_filter(campaign_ids: Optional[List[str]]) -> Dict:
    filters = {'stateFilter': {'include': ['ENABLED', 'PAUSED']}}
    if campaign_ids:
      filters['campaignIdFilter'] = {'include': [str(c) for c in campaign_ids]}
    return filters

  def list_campaigns(self, state_filter: Optional[List[str]] = None,
                     max_items: Optional[int] = None) -> List[Campaign]:
    filters = {'stateFilter': {'include': state_filter or ['ENABLED', 'PAUSED']}}
    raw = self._list_all('/sp/campaigns/list', 'campaign', 'campaigns', filters, max_items)
    campaigns = [Campaign.from_api(item) for item in raw]
    logger.info(f"Retrieved {len(campaigns)} campaigns for profile {self.profile_id}")
    return campaigns

  def list_ad_groups(self, campaign_ids: Optional[List[str]] = None) -> List[AdGroup]:
    raw = self._list_all('/sp/adGroups/list', 'adGroup', 'adGroups',
                         self._campaign_filter(campaign_ids))
    ad_groups = [AdGroup.from_api(item) for item in raw]
    logger.info(f"Retrieved {len(ad_groups)} ad groups")
    return ad_groups

  def list_keywords(self, campaign_ids: Optional[List[str]] = None) -> List[Keyword]:
    raw = self._list_all('/sp/keywords/list', 'keyword', 'keywords',
                         self._campaign_filter(campaign_ids))
    keywords = [Keyword.from_api(item) for item in raw]
    logger.info(f"Retrieved {len(keywords)} keywords")
    return keywords

  def list_targets(self, campaign_ids: Optional[List[str]] = None) -> List[Target]:
    raw = self._list_all('/sp/targets/list', 'target', 'targetingClauses',
                         self._campaign_filter(campaign_ids))
    targets = [Target.from_api(item) for item in raw]
    logger.info(f"Retrieved {len(targets)} targets")
    return targets

  # ========================================================================
  # CAMPAIGNS / AD GROUPS
  # ========================================================================

  def update_campaign_state(self, campaign_id: str, state: str) -> ApiResponse:
    return self._mutate('PUT', '/sp/campaigns', 'campaign', 'campaigns',
                        [{'campaignId': str(campaign_id), 'state': state.upper()}])

  def update_campaign_budget(self, campaign_id: str, budget: float) -> ApiResponse:
    return self._mutate('PUT', '/sp/campaigns', 'campaign', 'campaigns', [{
      'campaignId': str(campaign_id),
      'budget': {'budget': round(float(budget), 2), 'budgetType': 'DAILY'},
    }])

  def update_campaign_bidding(self, campaign_id: str, strategy: Optional[str] = None,
                              placements: Optional[Dict[str, int]] = None) -> ApiResponse:
    """Set the bidding strategy and/or placement adjustments (percent)"""
    bidding: Dict[str, Any] = {}
    if strategy:
      bidding['strategy'] = strategy
    if placements:
      bidding['placementBidding'] = [
        {'placement': placement, 'percentage': int(percentage)}
        for placement, percentage in placements.items()
      ]
    return self._mutate('PUT', '/sp/campaigns', 'campaign', 'campaigns',
                        [{'campaignId': str(campaign_id), 'dynamicBidding': bidding}])

  def update_ad_group_state(self, ad_group_id: str, state: str) -> ApiResponse:
    return self._mutate('PUT', '/sp/adGroups', 'adGroup', 'adGroups',
                        [{'adGroupId': str(ad_group_id), 'state': state.upper()}])

  def update_ad_group_bid(self, ad_group_id: str, default_bid: float) -> ApiResponse:
    return self._mutate('PUT', '/sp/adGroups', 'adGroup', 'adGroups',
                        [{'adGroupId': str(ad_group_id), 'defaultBid': round(float(default_bid), 2)}])

  # ========================================================================
  # KEYWORDS / TARGETS
  # ========================================================================

  def create_keyword(self, campaign_id: str, ad_group_id: str, keyword_text: str,
                     match_type: str, bid: Optional[float] = None) -> ApiResponse:
    keyword = {
      'campaignId': str(campaign_id),
      'adGroupId': str(ad_group_id),
      'keywordText': keyword_text,
      'matchType': match_type.upper(),
      'state': 'ENABLED',
    }
    if bid is not None:
      keyword['bid'] = round(float(bid), 2)
    return self._mutate('POST', '/sp/keywords', 'keyword', 'keywords', [keyword])

  def update_keyword_bid(self, keyword_id: str, bid: float) -> ApiResponse:
    return self._mutate('PUT', '/sp/keywords', 'keyword', 'keywords',
                        [{'keywordId': str(keyword_id), 'bid': round(float(bid), 2)}])

  def update_keyword_state(self, keyword_id: str, state: str) -> ApiResponse:
    return self._mutate('PUT', '/sp/keywords', 'keyword', 'keywords',
                        [{'keywordId': str(keyword_id), 'state': state.upper()}])

  def batch_update_keywords(self, updates: List[Dict]) -> Dict[str, Any]:
    """Batch update keywords (up to 100 at a time); failed_ids lists rejected keyword ids"""
    results = {'total': len(updates), 'success': 0, 'failed': 0, 'failed_ids': []}

    for i in range(0, len(updates), BATCH_SIZE):
      batch = updates[i:i + BATCH_SIZE]
      response = self.call('PUT', '/sp/keywords', {'keywords': batch}, MEDIA_TYPES['keyword'])
      if not response.success:
        logger.error(f"Failed to batch update keywords: {response.error}")
        results['failed'] += len(batch)
        results['failed_ids'].extend(str(u['keywordId']) for u in batch)
        continue
      success, errors = parse_multi_status(response.data, 'keywords')
      results['success'] += len(success)
      results['failed'] += len(errors)
      for item in errors:
        index = item.get('index')
        if isinstance(index, int) and 0 <= index < len(batch):
          results['failed_ids'].append(str(batch[index]['keywordId']))
      if errors:
        logger.warning(f"Keyword update errors: {_item_errors(errors)}")

    logger.info(f"Batch update complete: {results['success']}/{results['total']} successful")
    return results

  def create_campaign_negative_keyword(self, campaign_id: str, keyword_text: str,
                                       match_type: str = 'NEGATIVE_EXACT') -> ApiResponse:
    return self._mutate('POST', '/sp/campaignNegativeKeywords', 'campaignNegativeKeyword',
                        'campaignNegativeKeywords', [{
                          'campaignId': str(campaign_id),
                          'keywordText': keyword_text,
                          'matchType': _negative_match_type(match_type),
                          'state': 'ENABLED',
                        }])

  def create_ad_group_negative_keyword(self, campaign_id: str, ad_group_id: str, keyword_text: str,
                                       match_type: str = 'NEGATIVE_EXACT') -> ApiResponse:
    return self._mutate('POST', '/sp/negativeKeywords', 'negativeKeyword', 'negativeKeywords', [{
      'campaignId': str(campaign_id),
      'adGroupId': str(ad_group_id),
      'keywordText': keyword_text,
      'matchType': _negative_match_type(match_type),
      'state': 'ENABLED',
    }])

  def update_target_bid(self, target_id: str, bid: float) -> ApiResponse:
    return self._mutate('PUT', '/sp/targets', 'target', 'targetingClauses',
                        [{'targetId': str(target_id), 'bid': round(float(bid), 2)}])

  def update_target_state(self, target_id: str, state: str) -> ApiResponse:
    return self._mutate('PUT', '/sp/targets', 'target', 'targetingClauses',
                        [{'targetId': str(target_id), 'state': state.upper()}])

  # ========================================================================
  # REPORTS
  # ========================================================================

  def create_report(self, request: ReportRequest) -> str:
    """Create a v3 report, reusing an in-flight duplicate when Amazon reports one"""
    payload = request.to_payload()
    logger.debug(
      f"Creating {request.kind} report {payload['startDate']}..{payload['endDate']} "
      f"({len(request.columns)} columns, {len(request.entity_ids)} ids)"
    )
    response = self._request('POST', '/reporting/reports', content_type=MEDIA_TYPES['report'],
                             accept=MEDIA_TYPES['report'], json=payload)

    if response.status_code == 425:
      match = REPORT_ID_PATTERN.search(response.text or '')
      if match:
        logger.info(f"Duplicate report detected, using existing reportId: {match.group(0)}")
        return match.group(0)

    if response.status_code >= 400:
      raise ReportError(f"Failed to create report: {response.status_code} {parse_error(response.text)}",
                        response.status_code, response.headers.get('x-amz-request-id'))

    report_id = (response.json() or {}).get('reportId')
    if not report_id:
      raise ReportError(f"Unexpected create report response: {response.text[:200]}")
    logger.info(f"Created report {report_id} ({request.kind})")
    return report_id

  def get_report_status(self, report_id: str) -> Dict[str, Any]:
    response = self._request('GET', f'/reporting/reports/{report_id}')
    if response.status_code >= 400:
      raise ReportError(f"Status check failed: {response.status_code} {parse_error(response.text)}",
                        response.status_code)
    return response.json() or {}

  def wait_for_report(self, report_id: str, max_attempts: int = 20,
                      initial_delay: float = 2.0) -> str:
    """Poll until the report is ready and return its download URL"""
    delay = initial_delay
    for attempt in range(max_attempts):
      status_data = self.get_report_status(report_id)
      status = (status_data.get('status') or '').upper()
      logger.debug(f"Report {report_id} status: {status} (attempt {attempt + 1}/{max_attempts})")

      if status in ('COMPLETED', 'SUCCESS'):
        url = status_data.get('url') or status_data.get('location')
        if not url:
          raise ReportError(f"Report {report_id} completed without a download url")
        return url
      if status in ('FAILED', 'FAILURE', 'CANCELLED'):
        raise ReportError(f"Report {report_id} failed: {status_data.get('failureReason') or status_data.get('statusDetails')}")

      self.sleep(delay)
      delay = min(delay * 1.5, MAX_BACKOFF_SECONDS)

    raise ReportError(f"Report {report_id} not ready after {max_attempts} polls")

  def download_report(self, report_url: str) -> List[Dict[str, Any]]:
    """Download and parse a report (gzip JSON, with JSON and gzip CSV fallbacks)"""
    # Pre-signed S3 url: no Amazon auth headers
    response = self.session.get(report_url, timeout=60)
    if response.status_code >= 400:
      raise ReportError(f"Download failed: {response.status_code}", response.status_code)

    content = response.content
    try:
      content = gzip.decompress(content)
    except (OSError, EOFError):
      logger.debug("Report body is not gzip, parsing as-is")

    text = content.decode('utf-8')
    stripped = text.lstrip()
    if stripped.startswith('[') or stripped.startswith('{'):
      data = json.loads(text)
      if isinstance(data, dict):
        data = data.get('rows') or data.get('data') or [data]
    else:
      data = list(csv.DictReader(io.StringIO(text)))

    logger.info(f"Downloaded report with {len(data)} rows")
    return data

  def fetch_report(self, request: ReportRequest) -> List[Dict[str, Any]]:
    report_id = self.create_report(request)
    url = self.wait_for_report(report_id)
    return self.download_report(url)

  def fetch_reports_parallel(self, requests_by_name: Dict[str, ReportRequest],
                             max_workers: int = 3) -> Dict[str, Any]:
    """
    Create reports sequentially, then poll and download them in parallel.
    Failed reports map to the exception that stopped them.
    """
    start_time = time.time()
    report_ids: Dict[str, str] = {}
    results: Dict[str, Any] = {}

    for name, request in requests_by_name.items():
      try:
        report_ids[name] = self.create_report(request)
      except AmazonApiError as e:
        logger.error(f"Failed to create report '{name}': {e}")
        results[name] = e

    def wait_and_download(name_and_id):
      name, report_id = name_and_id
      return name, self.download_report(self.wait_for_report(report_id))

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
      future_to_name = {
        executor.submit(wait_and_download, item): item[0]
        for item in report_ids.items()
      }
      for future in as_completed(future_to_name):
        name = future_to_name[future]
        try:
          _, rows = future.result()
          results[name] = rows
          logger.info(f"Downloaded report '{name}': {len(rows)} records")
        except (AmazonApiError, ValueError, requests.exceptions.RequestException) as e:
          logger.error(f"Error processing report '{name}': {e}")
          results[name] = e

    logger.info(f"Parallel report processing complete in {time.time() - start_time:.1f}s")
    return results


def _negative_match_type(match_type: str) -> str:
  value = (match_type or '').upper()
  if value in ('PHRASE', 'NEGATIVE_PHRASE', 'NEGATIVEPHRASE'):
    return 'NEGATIVE_PHRASE'
  return 'NEGATIVE_EXACT'
