"""
Budget forecast
===============

Statistical monthly spend forecast per profile: six months of daily
campaign spend rolled up to calendar months, a linear trend projected
forward, and recommendations against the active daily budgets.
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from .models import utcnow
from .store import Store

logger = logging.getLogger(__name__)

HISTORY_DAYS = 183
DAYS_PER_MONTH = 30.4
# Relative monthly slope below which the trend counts as stable
STABLE_TREND = 0.05


def confidence_for(monthly: pd.Series) -> str:
  """Confidence label from the coefficient of variation of monthly spend"""
  if len(monthly) < 3 or monthly.mean() <= 0:
    return 'low'
  cv = monthly.std(ddof=0) / monthly.mean()
  if cv < 0.15:
    return 'high'
  if cv < 0.35:
    return 'medium'
  return 'low'


def monthly_spend(rows: List[Dict[str, Any]], current_month: pd.Period) -> pd.Series:
  """Completed-month spend totals indexed by period"""
  if not rows:
    return pd.Series(dtype=float)
  df = pd.DataFrame(rows)
  df['date'] = pd.to_datetime(df['date'])
  df['spend'] = pd.to_numeric(df['spend'], errors='coerce').fillna(0.0)
  df['month'] = df['date'].dt.to_period('M')
  totals = df.groupby('month')['spend'].sum().sort_index()
  return totals[totals.index < current_month]


def project(monthly: pd.Series, months: int) -> List[float]:
  if monthly.empty:
    return [0.0] * months
  if len(monthly) < 2:
    return [round(float(monthly.iloc[0]), 2)] * months
  x = np.arange(len(monthly))
  slope, intercept = np.polyfit(x, monthly.values.astype(float), 1)
  return [round(max(0.0, float(intercept + slope * (len(monthly) + i))), 2) for i in range(months)]


def trend_direction(monthly: pd.Series) -> str:
  if len(monthly) < 2 or monthly.mean() <= 0:
    return 'stable'
  slope = np.polyfit(np.arange(len(monthly)), monthly.values.astype(float), 1)[0]
  relative = slope / monthly.mean()
  if relative > STABLE_TREND:
    return 'increasing'
  if relative < -STABLE_TREND:
    return 'decreasing'
  return 'stable'


def recommend(predicted: float, capacity: float) -> Dict[str, Any]:
  """Compare the next month's projection with the monthly budget capacity"""
  if capacity <= 0:
    return {'title': 'Set campaign budgets', 'action': 'hold', 'priority': 'low',
            'description': 'No active campaign budgets to compare the forecast against',
            'suggested_amount': round(predicted, 2)}
  if predicted > capacity * 0.95:
    return {'title': 'Increase monthly budget', 'action': 'increase', 'priority': 'high',
            'description': (f"Projected spend ${predicted:,.2f} is close to or above the budget "
                            f"capacity ${capacity:,.2f}; campaigns may run out of budget"),
            'suggested_amount': round(predicted * 1.1, 2)}
  if predicted < capacity * 0.5:
    return {'title': 'Reallocate unused budget', 'action': 'decrease', 'priority': 'medium',
            'description': (f"Projected spend ${predicted:,.2f} uses less than half of the "
                            f"budget capacity ${capacity:,.2f}"),
            'suggested_amount': round(predicted * 1.2, 2)}
  return {'title': 'Keep current budget', 'action': 'hold', 'priority': 'low',
          'description': f"Projected spend ${predicted:,.2f} fits the budget capacity ${capacity:,.2f}",
          'suggested_amount': round(capacity, 2)}


class BudgetForecaster:
  """Builds and stores the monthly spend forecast for one profile"""

  def __init__(self, store: Store):
    self.store = store

  def forecast(self, profile_id: str, months: int = 3, now: Optional[datetime] = None,
               save: bool = True) -> Dict[str, Any]:
    start_time = time.time()
    now = now or utcnow()
    logger.info(f"=== Forecasting budget for profile {profile_id} ({months} months) ===")

    since = (now - timedelta(days=HISTORY_DAYS)).date().isoformat()
    rows = self.store.select('fact_performance_daily', {
      'profile_id': profile_id, 'entity_type': 'campaign', 'date__gte': since,
    })
    current_month = pd.Period(now.strftime('%Y-%m'), freq='M')
    monthly = monthly_spend(rows, current_month)

    campaigns = self.store.select('campaigns', {'profile_id': profile_id, 'status': 'enabled'})
    active_budget = sum(float(c.get('daily_budget') or 0) for c in campaigns)
    capacity = active_budget * DAYS_PER_MONTH

    confidence = confidence_for(monthly)
    predictions = project(monthly, months)
    forecasts = [{
      'month': str(current_month + i + 1),
      'predicted_spend': predicted,
      'confidence': confidence,
    } for i, predicted in enumerate(predictions)]

    insights = {
      'average_monthly_spend': round(float(monthly.mean()), 2) if not monthly.empty else 0.0,
      'trend': trend_direction(monthly),
      'months_of_history': int(len(monthly)),
      'peak_month': str(monthly.idxmax()) if not monthly.empty else None,
      'active_campaigns': len(campaigns),
      'active_daily_budget': round(active_budget, 2),
    }
    result = {
      'profile_id': profile_id,
      'generated_at': now,
      'months_to_forecast': months,
      'history': {str(k): round(float(v), 2) for k, v in monthly.items()},
      'forecasts': forecasts,
      'recommendations': [recommend(predictions[0], capacity)] if predictions else [],
      'insights': insights,
    }

    if save:
      self.store.insert('budget_forecasts', result)
    result['execution_time_seconds'] = round(time.time() - start_time, 2)
    logger.info(f"Forecast complete: {len(monthly)} months of history, trend {insights['trend']}, "
                f"next month ${predictions[0] if predictions else 0:,.2f}")
    return result
