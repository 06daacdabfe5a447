"""Command line parsing and exit codes."""

import json

import pytest
import yaml

from ppcpal.cli import build_parser, main


@pytest.fixture
def memory_config(tmp_path):
  path = tmp_path / 'ppc_config.yaml'
  path.write_text(yaml.safe_dump({'store': {'backend': 'memory'}, 'logging': {'level': 'WARNING'}}))
  return str(path)


def test_parser_defaults():
  args = build_parser().parse_args(['detect-anomalies'])
  assert (args.window, args.scope, args.profile_id) == ('daily', 'campaign', None)
  assert args.dry_run is False


def test_parser_global_flags_and_choices():
  args = build_parser().parse_args(['--dry-run', '--config', 'x.yaml', 'sync', '--time-unit', 'SUMMARY'])
  assert args.dry_run and args.config == 'x.yaml' and args.time_unit == 'SUMMARY'
  with pytest.raises(SystemExit):
    build_parser().parse_args(['detect-anomalies', '--window', 'weekly'])


def test_parser_requires_command():
  with pytest.raises(SystemExit):
    build_parser().parse_args([])


def test_run_rules_with_memory_store(memory_config, capsys):
  assert main(['--config', memory_config, 'run-rules']) == 0
  output = json.loads(capsys.readouterr().out)
  assert output['processed_rules'] == 0


def test_forecast_dry_run(memory_config, capsys):
  assert main(['--config', memory_config, '--dry-run', 'forecast', '--profile-id', '111']) == 0
  output = json.loads(capsys.readouterr().out)
  assert output['profile_id'] == '111'
  assert len(output['forecasts']) == 3


def test_hourly_with_no_connections(memory_config, capsys):
  assert main(['--config', memory_config, 'hourly']) == 0
  assert json.loads(capsys.readouterr().out)['skipped'] is True


def test_bid_dayparting_needs_profile(memory_config):
  assert main(['--config', memory_config, 'daypart', '--bids']) == 1


def test_missing_config_file_fails(tmp_path):
  assert main(['--config', str(tmp_path / 'missing.yaml'), 'run-rules']) == 1
