"""CSV audit trail for every change PPC Pal makes or would make."""

import csv
import logging
import os
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from typing import List, Optional

logger = logging.getLogger(__name__)


@dataclass
class AuditEntry:
  """Audit trail entry"""
  timestamp: str
  profile_id: str
  action_type: str
  entity_type: str
  entity_id: str
  old_value: str
  new_value: str
  reason: str
  dry_run: bool


class AuditLogger:
  """Collects audit entries in memory and writes them to a CSV file"""

  def __init__(self, output_dir: Optional[str] = None):
    self.output_dir = output_dir
    self.entries: List[AuditEntry] = []
    self.filename = None
    if output_dir:
      self.filename = os.path.join(
        output_dir,
        f"ppcpal_audit_{datetime.now().strftime('%Y%m%d_%H%M%S')}.csv"
      )

  def log(self, profile_id: str, action_type: str, entity_type: str, entity_id: str,
          old_value, new_value, reason: str, dry_run: bool = False) -> AuditEntry:
    """Log an audit entry"""
    entry = AuditEntry(
      timestamp=datetime.now(timezone.utc).isoformat(),
      profile_id=str(profile_id),
      action_type=action_type,
      entity_type=entity_type,
      entity_id=str(entity_id),
      old_value='' if old_value is None else str(old_value),
      new_value='' if new_value is None else str(new_value),
      reason=reason,
      dry_run=dry_run
    )
    self.entries.append(entry)
    logger.debug(
      f"Audit log: {action_type} {entity_type} {entity_id}: "
      f"{entry.old_value} -> {entry.new_value} ({reason})"
    )
    return entry

  def save(self) -> Optional[str]:
    """Save audit trail to CSV, returning the file name"""
    if not self.entries:
      logger.info("No audit entries to save")
      return None
    if not self.filename:
      logger.debug(f"Audit output disabled, {len(self.entries)} entries kept in memory")
      return None

    os.makedirs(self.output_dir, exist_ok=True)
    fieldnames = [f.name for f in fields(AuditEntry)]
    try:
      with open(self.filename, 'w', newline='', encoding='utf-8') as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        for entry in self.entries:
          writer.writerow(asdict(entry))
    except OSError as e:
      logger.error(f"Failed to save audit trail: {e}")
      return None

    logger.info(f"Audit trail saved to {self.filename} ({len(self.entries)} entries)")
    return self.filename
