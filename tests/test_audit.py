"""CSV audit trail."""

import csv

from ppcpal.audit import AuditLogger


def test_save_writes_csv(tmp_path):
  audit = AuditLogger(str(tmp_path))
  audit.log('111', 'SET_BID', 'keyword', 42, 0.5, 0.6, 'Thompson sampling', dry_run=True)
  path = audit.save()
  with open(path, newline='', encoding='utf-8') as f:
    rows = list(csv.DictReader(f))
  assert rows[0]['entity_id'] == '42'
  assert rows[0]['old_value'] == '0.5'
  assert rows[0]['dry_run'] == 'True'


def test_save_without_entries_or_dir():
  assert AuditLogger(None).save() is None
  audit = AuditLogger(None)
  audit.log('111', 'PAUSE', 'campaign', '9', 'enabled', 'paused', 'budget')
  assert audit.save() is None
  assert len(audit.entries) == 1
