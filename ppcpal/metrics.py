"""Performance metric math shared by sync, rules, anomalies and reporting."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

logger = logging.getLogger(__name__)

SIMULATED_SOURCES = {'simulated', 'simulation', 'fake'}

SPEND_COLUMNS = ('cost', 'spend')
SALES_COLUMNS = ('sales7d', 'sales14d', 'attributedSales14d', 'attributedSales7d', 'sales')
ORDER_COLUMNS = ('purchases7d', 'purchases14d', 'attributedConversions14d',
                 'attributedConversions7d', 'orders')


def _first(row: Dict[str, Any], columns: Iterable[str]) -> float:
  for column in columns:
    value = row.get(column)
    if value not in (None, ''):
      try:
        return float(value)
      except (TypeError, ValueError):
        continue
  return 0.0


def pct_change(current: float, previous: float) -> float:
  return ((current - previous) / previous) * 100 if previous > 0 else 0.0


@dataclass
class PerformanceMetrics:
  """Raw counters plus derived ratios (ctr, acos and cvr in percent)"""
  impressions: int = 0
  clicks: int = 0
  spend: float = 0.0
  sales: float = 0.0
  orders: int = 0

  @classmethod
  def from_report_row(cls, row: Dict[str, Any]) -> 'PerformanceMetrics':
    return cls(
      impressions=int(_first(row, ('impressions',))),
      clicks=int(_first(row, ('clicks',))),
      spend=round(_first(row, SPEND_COLUMNS), 2),
      sales=round(_first(row, SALES_COLUMNS), 2),
      orders=int(_first(row, ORDER_COLUMNS)),
    )

  def __add__(self, other: 'PerformanceMetrics') -> 'PerformanceMetrics':
    return PerformanceMetrics(
      impressions=self.impressions + other.impressions,
      clicks=self.clicks + other.clicks,
      spend=round(self.spend + other.spend, 2),
      sales=round(self.sales + other.sales, 2),
      orders=self.orders + other.orders,
    )

  @property
  def ctr(self) -> float:
    return (self.clicks / self.impressions) * 100 if self.impressions > 0 else 0.0

  @property
  def cpc(self) -> float:
    return self.spend / self.clicks if self.clicks > 0 else 0.0

  @property
  def acos(self) -> float:
    return (self.spend / self.sales) * 100 if self.sales > 0 else 0.0

  @property
  def roas(self) -> float:
    return self.sales / self.spend if self.spend > 0 else 0.0

  @property
  def cvr(self) -> float:
    return (self.orders / self.clicks) * 100 if self.clicks > 0 else 0.0

  @property
  def has_activity(self) -> bool:
    return any((self.impressions, self.clicks, self.spend, self.sales, self.orders))

  def to_row(self) -> Dict[str, Any]:
    """Columns written onto entity tables"""
    return {
      'impressions': self.impressions,
      'clicks': self.clicks,
      'spend': self.spend,
      'sales': self.sales,
      'orders': self.orders,
      'ctr': round(self.ctr, 4),
      'cpc': round(self.cpc, 4),
      'acos': round(self.acos, 4),
      'roas': round(self.roas, 4),
      'conversion_rate': round(self.cvr, 4),
    }


def summarize(campaigns: Iterable[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
  """
  Account-level KPIs over campaign rows, with month-over-month changes from
  the rows' previous_month_* columns. Simulated rows and rows with no
  activity are ignored; returns None when nothing real is left.
  """
  real = []
  for row in campaigns:
    if str(row.get('data_source') or '').lower() in SIMULATED_SOURCES:
      continue
    if PerformanceMetrics(
      impressions=int(row.get('impressions') or 0),
      clicks=int(row.get('clicks') or 0),
      spend=float(row.get('spend') or 0),
      sales=float(row.get('sales') or 0),
      orders=int(row.get('orders') or 0),
    ).has_activity:
      real.append(row)

  if not real:
    logger.info("No real campaign data available for metrics summary")
    return None

  totals = PerformanceMetrics()
  prev_sales = prev_spend = 0.0
  prev_orders = 0
  for row in real:
    totals = totals + PerformanceMetrics(
      impressions=int(row.get('impressions') or 0),
      clicks=int(row.get('clicks') or 0),
      spend=float(row.get('spend') or 0),
      sales=float(row.get('sales') or 0),
      orders=int(row.get('orders') or 0),
    )
    prev_sales += float(row.get('previous_month_sales') or 0)
    prev_spend += float(row.get('previous_month_spend') or 0)
    prev_orders += int(row.get('previous_month_orders') or 0)

  profit = totals.sales - totals.spend
  prev_profit = prev_sales - prev_spend

  return {
    'total_sales': totals.sales,
    'total_spend': totals.spend,
    'total_profit': round(profit, 2),
    'total_orders': totals.orders,
    'total_impressions': totals.impressions,
    'total_clicks': totals.clicks,
    'average_acos': totals.acos,
    'average_roas': totals.roas,
    'average_cost_per_unit': totals.spend / totals.orders if totals.orders > 0 else 0.0,
    'average_ctr': totals.ctr,
    'average_cpc': totals.cpc,
    'conversion_rate': totals.cvr,
    'sales_change': pct_change(totals.sales, prev_sales),
    'spend_change': pct_change(totals.spend, prev_spend),
    'orders_change': pct_change(totals.orders, prev_orders),
    'profit_change': ((profit - prev_profit) / abs(prev_profit)) * 100 if prev_profit != 0 else 0.0,
    'campaign_count': len(real),
  }
