"""
PegSentinel Core: Audit Logger

Structured JSONL trail of every committed vault event and every keeper poll,
for incident review and for replaying what the keeper saw.
"""

import json
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.events import EventRecord

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Structured audit trail logger.

    Writes two kinds of entries:
    - "event": a committed vault event (RegimeChanged, BufferDeployed, ...)
    - "poll": one keeper poll with tick, regime and outcome

    Output format: JSONL (one JSON object per line)
    """

    def __init__(self, audit_file: Optional[str] = None):
        """
        Initialize audit logger.

        Args:
            audit_file: Path to audit log file (default: logs/audit.jsonl)
        """
        self.audit_file = Path(audit_file) if audit_file else Path("logs/audit.jsonl")
        self.audit_file.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized AuditLogger at {self.audit_file}")

    def log_event(self, event: EventRecord) -> None:
        """EventLog subscriber."""
        self._append({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "kind": "event",
            **event.to_dict(),
        })

    def log_poll(self,
                 ts: datetime,
                 mode: str,
                 tick: Optional[int],
                 regime: str,
                 status: str,
                 action: Optional[str] = None,
                 error: Optional[str] = None,
                 deviation_bps: Optional[float] = None,
                 treasury: Optional[Dict[str, int]] = None,
                 duration_seconds: Optional[float] = None) -> None:
        """
        Log one keeper poll.

        Args:
            ts: Poll timestamp
            mode: PAPER or LIVE (suffixed with DRY_RUN when not submitting)
            tick: Pool tick observed (None when the read failed)
            regime: Active regime after the poll
            status: "rebalanced", "no_change", "skipped" or "failed"
            action: Rebalance action taken, if any
            error: Refusal or failure class name
        """
        entry: Dict[str, Any] = {
            "timestamp": ts.isoformat(),
            "kind": "poll",
            "mode": mode,
            "tick": tick,
            "regime": regime,
            "status": status,
            "action": action,
            "error": error,
        }
        if deviation_bps is not None:
            entry["deviation_bps"] = round(deviation_bps, 2)
        if treasury is not None:
            entry["treasury"] = treasury
        if duration_seconds is not None:
            entry["duration_seconds"] = round(duration_seconds, 4)
        self._append(entry)
        logger.debug(f"Audited poll: status={status}")

    def _append(self, entry: Dict[str, Any]) -> None:
        try:
            with open(self.audit_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        except OSError as e:
            logger.error(f"Failed to write audit log: {e}")

    def get_recent(self, n: int = 10, kind: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Get the N most recent entries.

        Args:
            n: Number of entries to retrieve
            kind: Only "event" or only "poll" entries

        Returns:
            List of entries (most recent first)
        """
        if not self.audit_file.exists():
            return []

        try:
            with open(self.audit_file, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except OSError as e:
            logger.error(f"Failed to read audit log: {e}")
            return []

        entries = []
        for line in reversed(lines):
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if kind is not None and entry.get("kind") != kind:
                continue
            entries.append(entry)
            if len(entries) >= n:
                break
        return entries
