#!/usr/bin/env python3
"""Single-use, time-boxed overrides for blocked edits.

After the user approves a blocked edit, the agent writes
``.claude/logs/.document-guard-overrides.json``:

    {"overrides": [{"file": "CLAUDE.md", "reason": "User approved",
                    "expires": 1760000000000}]}

``expires`` is epoch milliseconds; a record without it (or with null)
never expires. Any other non-numeric value counts as expired.
The next blocked edit of a matching path consumes the record (all
matching records are removed, the file is deleted once empty).

Reads fail closed: an unreadable or corrupt file grants nothing.
Consumption is best-effort: write errors are logged and swallowed so
they can never block the surrounding decision.
"""

import contextlib
import json
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from _guard_utils import get_override_file_path, log_guard


def now_ms() -> int:
    return int(time.time() * 1000)


# ============================================================
# Path Patterns
# ============================================================


@dataclass(frozen=True)
class Exact:
    path: str

    def matches(self, candidate: str) -> bool:
        return candidate == self.path


@dataclass(frozen=True)
class DirectorySuffix:
    """Matches ``path`` or any ``.../path``. Never a partial file name:
    ``registry.yaml`` does not match ``feature-registry.yaml``."""

    path: str

    def matches(self, candidate: str) -> bool:
        return candidate == self.path or candidate.endswith("/" + self.path)


class OverridePattern:
    """Builds the matcher for an override record's ``file`` field."""

    @staticmethod
    def parse(file_field: str):
        normalized = str(file_field).replace("\\", "/")
        if normalized.startswith("/"):
            return Exact(normalized)
        return DirectorySuffix(normalized)


def _normalize(path: str) -> str:
    return path.replace("\\", "/")


# ============================================================
# Records
# ============================================================


@dataclass(frozen=True)
class OverrideRecord:
    file: str
    reason: str = ""
    expires: float | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OverrideRecord":
        expires = data.get("expires")
        if expires is not None and (isinstance(expires, bool) or not isinstance(expires, (int, float))):
            # Unusable expiry: treat as already expired, never as permanent
            log_guard("WARN", f"Override for '{data.get('file')}' has invalid expires {expires!r} - ignored")
            expires = 0
        return cls(file=str(data.get("file", "")), reason=str(data.get("reason", "")), expires=expires)

    def matches(self, relative_path: str) -> bool:
        if not self.file:
            return False
        return OverridePattern.parse(self.file).matches(_normalize(relative_path))

    def is_expired(self, now: float) -> bool:
        return self.expires is not None and self.expires <= now


def load_overrides(override_file: Path | None = None) -> tuple[dict[str, Any] | None, str | None]:
    """Read the override document.

    Returns:
        (document, None) on success, (None, None) if the file does not
        exist, (None, error) on a read or parse failure.
    """
    override_file = override_file or get_override_file_path()
    try:
        with open(override_file, encoding="utf-8") as f:
            document = json.load(f)
    except FileNotFoundError:
        return None, None
    except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
        return None, f"{type(e).__name__}: {e}"

    if not isinstance(document, dict) or not isinstance(document.get("overrides", []), list):
        return None, "override file must be an object with an 'overrides' list"
    return document, None


def _records(document: dict[str, Any]) -> list[OverrideRecord]:
    return [
        OverrideRecord.from_dict(entry)
        for entry in document.get("overrides", [])
        if isinstance(entry, dict)
    ]


# ============================================================
# Authority
# ============================================================


def has_override(relative_path: str, now: float | None = None, override_file: Path | None = None) -> bool:
    """True if an unexpired record matches ``relative_path``."""
    document, error = load_overrides(override_file)
    if error:
        log_guard("WARN", f"Ignoring unreadable override file: {error}")
        return False
    if document is None:
        return False

    now = now_ms() if now is None else now
    return any(
        record.matches(relative_path) and not record.is_expired(now)
        for record in _records(document)
    )


def _atomic_write_json(path: Path, document: dict[str, Any]) -> None:
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_name, path)
    except Exception:
        with contextlib.suppress(OSError):
            os.unlink(temp_name)
        raise


def consume_override(relative_path: str, override_file: Path | None = None) -> None:
    """Remove every record matching ``relative_path``. Best-effort.

    Concurrent consumers are last-writer-wins; the rewrite itself is
    atomic so the file is never left half-written.
    """
    override_file = override_file or get_override_file_path()
    document, error = load_overrides(override_file)
    if error:
        log_guard("WARN", f"Could not consume override (read failed): {error}")
        return
    if document is None:
        return

    kept = [
        entry
        for entry in document.get("overrides", [])
        if not (isinstance(entry, dict) and OverrideRecord.from_dict(entry).matches(relative_path))
    ]
    document["overrides"] = kept

    try:
        if kept:
            _atomic_write_json(override_file, document)
        else:
            override_file.unlink(missing_ok=True)
    except OSError as e:
        log_guard("WARN", f"Could not consume override (write failed): {e}")
