#!/usr/bin/env python3
"""Append-only audit trail of guard decisions.

One JSON object per line in .claude/logs/document-guard.jsonl:

    {"timestamp": "...", "hook": "document-guard", "version": 2,
     "action": "blocked", "file": "CLAUDE.md",
     "violations": [{"check": ..., "tier": ..., "message": ...}],
     "rules": ["CLAUDE.md (root) - protect structure"]}

Audit failures are logged, never raised.
"""

import json
from datetime import datetime, timezone
from pathlib import Path

from _guard_types import Rule, Violation
from _guard_utils import HOOK_NAME, get_audit_file_path, log_guard

AUDIT_VERSION = 2


def build_audit_entry(
    action: str,
    relative_path: str,
    violations: list[Violation],
    rules: list[Rule],
) -> dict:
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        "hook": HOOK_NAME,
        "version": AUDIT_VERSION,
        "action": action,
        "file": relative_path,
        "violations": [v.to_dict() for v in violations],
        "rules": [rule.name for rule in rules or []],
    }


def audit_log(
    action: str,
    relative_path: str,
    violations: list[Violation],
    rules: list[Rule],
    audit_file: Path | None = None,
) -> None:
    audit_file = audit_file or get_audit_file_path()
    try:
        entry = build_audit_entry(action, relative_path, violations, rules)
        audit_file.parent.mkdir(parents=True, exist_ok=True)
        with open(audit_file, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry) + "\n")
    except Exception as e:
        log_guard("ERROR", f"Audit log error: {e}")
