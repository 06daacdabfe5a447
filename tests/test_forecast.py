"""Monthly spend forecast and budget recommendations."""

import pandas as pd
import pytest

from conftest import NOW
from ppcpal.forecast import BudgetForecaster, confidence_for, monthly_spend, project, recommend, trend_direction


def _month_rows(spends, start='2026-05'):
  months = pd.period_range(start, periods=len(spends), freq='M')
  return [{'date': f"{m}-01", 'profile_id': '111', 'entity_type': 'campaign', 'entity_id': '1', 'spend': s}
          for m, s in zip(months, spends)]


def test_monthly_spend_excludes_current_month():
  rows = _month_rows([100, 200]) + [{'date': '2026-10-05', 'spend': 999}]
  monthly = monthly_spend(rows, pd.Period('2026-10', freq='M'))
  assert list(monthly.values) == [100, 200]


def test_linear_projection_and_trend():
  monthly = pd.Series([100.0, 200.0, 300.0, 400.0])
  assert project(monthly, 3) == pytest.approx([500.0, 600.0, 700.0])
  assert trend_direction(monthly) == 'increasing'
  assert trend_direction(pd.Series([400.0, 300.0, 200.0])) == 'decreasing'


def test_projection_edge_cases():
  assert project(pd.Series(dtype=float), 2) == [0.0, 0.0]
  assert project(pd.Series([250.0]), 2) == [250.0, 250.0]
  assert min(project(pd.Series([300.0, 100.0]), 3)) == 0.0


def test_confidence_levels():
  assert confidence_for(pd.Series([100.0, 101.0, 99.0])) == 'high'
  assert confidence_for(pd.Series([100.0, 150.0, 70.0])) == 'medium'
  assert confidence_for(pd.Series([10.0, 300.0, 50.0])) == 'low'
  assert confidence_for(pd.Series([100.0, 100.0])) == 'low'


def test_recommendations():
  assert recommend(300, 304)['action'] == 'increase'
  assert recommend(300, 304)['suggested_amount'] == 330.0
  assert recommend(100, 304)['action'] == 'decrease'
  assert recommend(200, 304)['action'] == 'hold'
  assert recommend(200, 0)['title'] == 'Set campaign budgets'


def test_forecast_saves_result(store):
  store.insert('fact_performance_daily', _month_rows([300] * 5) + [
    {'date': '2026-10-02', 'profile_id': '111', 'entity_type': 'campaign', 'entity_id': '1', 'spend': 50}])
  store.insert('campaigns', [{'profile_id': '111', 'status': 'enabled', 'daily_budget': 10},
                             {'profile_id': '111', 'status': 'paused', 'daily_budget': 90}])

  result = BudgetForecaster(store).forecast('111', months=3, now=NOW)

  assert [f['month'] for f in result['forecasts']] == ['2026-11', '2026-12', '2027-01']
  assert [f['predicted_spend'] for f in result['forecasts']] == pytest.approx([300.0] * 3)
  assert result['forecasts'][0]['confidence'] == 'high'
  assert result['insights']['trend'] == 'stable'
  assert result['insights']['active_daily_budget'] == 10.0
  assert result['recommendations'][0]['action'] == 'increase'
  assert store.count('budget_forecasts', {'profile_id': '111'}) == 1


def test_forecast_without_history(store):
  result = BudgetForecaster(store).forecast('111', months=2, now=NOW, save=False)
  assert [f['predicted_spend'] for f in result['forecasts']] == [0.0, 0.0]
  assert result['insights']['peak_month'] is None
  assert store.count('budget_forecasts') == 0
