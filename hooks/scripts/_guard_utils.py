#!/usr/bin/env python3
"""Guard utilities for the Document Guard plugin.

This module provides shared utilities for the document guard hook:
- Project/plugin directory resolution
- Logging (with rotation)
- Dry-run mode support
- Configuration loading (two-tier, mtime-refreshed)
- Config validation
- Toggle resolution (including the DOCUMENT_GUARD_ENABLED kill switch)
- Path helpers (absolute/relative conversion, project boundary)
- Prior content reads
- Hook response helpers

# Config resolution chain (2-step, first existing file wins entirely):
#   1. $CLAUDE_PROJECT_DIR/.claude/hooks/document-guard.config.json (project)
#   2. $CLAUDE_PLUGIN_ROOT/config/document-guard.config.json (plugin default)
# No usable config = allow everything (fail-open).

Usage:
    from _guard_utils import (
        get_config_cache,
        resolve_toggles,
        log_guard,
        is_dry_run,
    )

Note on log_guard():
    - Silent fail if the project directory cannot be determined
    - Silent fail on file write errors
    - This is intentional to avoid breaking hooks on logging issues

Design Principles:
    1. Fail-open: the guard never blocks a mutation it failed to evaluate
    2. Forward slashes for every path that is matched against a rule
    3. Robust Exception Handling: Never crash the hook lifecycle
"""

import json
import os
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any

import regex

from _guard_types import CheckKind, SemanticSettings, Tier, Toggles

# ============================================================
# Constants
# ============================================================

HOOK_NAME = "document-guard"

ENABLED_ENV = "DOCUMENT_GUARD_ENABLED"
"""Emergency kill switch. "false", "0" or "" disables every check."""

DRY_RUN_ENV = "CLAUDE_HOOK_DRY_RUN"
"""Environment variable to enable dry-run mode.
Set to "1", "true", or "yes" to enable."""

PROJECT_CONFIG_RELPATH = Path(".claude") / "hooks" / "document-guard.config.json"
PLUGIN_CONFIG_RELPATH = Path("config") / "document-guard.config.json"

LOG_DIR_RELPATH = Path(".claude") / "logs"
OVERRIDE_FILE_NAME = ".document-guard-overrides.json"
AUDIT_FILE_NAME = "document-guard.jsonl"
LOG_FILE_NAME = "document-guard.log"

MAX_LOG_SIZE_BYTES = 1_000_000
"""Maximum log file size before rotation (1 MB)."""

MAX_PATH_PREVIEW_LENGTH = 60
"""Maximum path length for log display. Paths longer than this are truncated."""

DEFAULT_OVERRIDE_TTL_SECONDS = 120
DEFAULT_MAX_VIOLATIONS_SHOWN = 5

EDIT_TOOLS = frozenset(
    {
        "Edit",
        "Write",
        "MultiEdit",
        "mcp__filesystem__edit_file",
        "mcp__filesystem__write_file",
    }
)
"""Tool names whose mutations are evaluated. Everything else passes through."""

VALID_FAIL_MODES = ("open", "closed")


# ============================================================
# Directories
# ============================================================


def get_project_dir() -> str:
    """Get the project directory.

    Uses CLAUDE_PROJECT_DIR when it names an existing directory, otherwise
    the current working directory (hooks run from the project root).

    Returns:
        Project directory path.
    """
    # Note: Cannot call log_guard() here - would cause infinite recursion
    # because log_guard() calls get_project_dir()
    project_dir = os.environ.get("CLAUDE_PROJECT_DIR", "")
    if project_dir and os.path.isdir(project_dir):
        return project_dir
    return os.getcwd()


def _get_plugin_root() -> str:
    """Get the plugin root directory.

    Falls back to the repository root (two levels above hooks/scripts/)
    when CLAUDE_PLUGIN_ROOT is not set.
    """
    root = os.environ.get("CLAUDE_PLUGIN_ROOT", "")
    if root:
        return root
    return str(Path(__file__).resolve().parent.parent.parent)


def get_log_dir() -> Path:
    return Path(get_project_dir()) / LOG_DIR_RELPATH


def get_override_file_path() -> Path:
    return get_log_dir() / OVERRIDE_FILE_NAME


def get_audit_file_path() -> Path:
    return get_log_dir() / AUDIT_FILE_NAME


# ============================================================
# Dry-Run Mode
# ============================================================


def is_dry_run() -> bool:
    """Check if running in dry-run (simulation) mode.

    In dry-run mode, decisions are computed, logged and audited, but
    blocks are not enforced and overrides are not consumed.

    Enable by setting environment variable:
        CLAUDE_HOOK_DRY_RUN=1

    Returns:
        True if dry-run mode is enabled.
    """
    value = os.environ.get(DRY_RUN_ENV, "").lower()
    return value in ("1", "true", "yes")


# ============================================================
# Logging with Rotation
# ============================================================


def _rotate_log_if_needed(log_file: Path) -> None:
    """Move the log aside to .log.1 once it reaches MAX_LOG_SIZE_BYTES.

    Only one backup is kept; a previous .log.1 is replaced. Errors are
    ignored.
    """
    try:
        if not log_file.exists():
            return

        if log_file.stat().st_size < MAX_LOG_SIZE_BYTES:
            return

        backup_file = log_file.with_suffix(".log.1")

        # rename() does not overwrite on Windows
        if backup_file.exists():
            backup_file.unlink()

        log_file.rename(backup_file)

    except Exception:
        # Silent fail - rotation is non-critical
        pass


def log_guard(level: str, message: str) -> None:
    """Log a guard event to .claude/logs/document-guard.log.

    Log format:
        TIMESTAMP [LEVEL] [DRY-RUN] MESSAGE

    Features:
    - Automatic rotation when log exceeds MAX_LOG_SIZE_BYTES
    - Keeps one backup file (.log.1) for debugging
    - Silent fail on any error - never breaks hook execution

    Args:
        level: Log level (INFO, WARN, ERROR, BLOCK, WARNED, OVERRIDE, ALLOW, DRY-RUN)
        message: Message to log.
    """
    try:
        log_file = get_log_dir() / LOG_FILE_NAME
        timestamp = datetime.now().isoformat(timespec="seconds")
        mode = "[DRY-RUN] " if is_dry_run() else ""
        line = f"{timestamp} [{level}] {mode}{message}\n"

        log_file.parent.mkdir(parents=True, exist_ok=True)
        _rotate_log_if_needed(log_file)

        with open(log_file, "a", encoding="utf-8") as f:
            f.write(line)
    except Exception:
        # Silent fail - don't break hook on log error
        pass


def truncate_path(path: str, max_length: int = MAX_PATH_PREVIEW_LENGTH) -> str:
    """Truncate path for display in logs.

    Shows the end of the path (most relevant part) with ... prefix.
    """
    if len(path) <= max_length:
        return path
    return f"...{path[-(max_length - 3) :]}"


# ============================================================
# Configuration Loading
# ============================================================


class ConfigCache:
    """Owned config snapshot, refreshed explicitly.

    Candidates are tried in order; the first existing file is the source.
    A cached config is reused while the source and its mtime are unchanged.
    Candidate paths are evaluated at refresh time so the cache follows
    CLAUDE_PROJECT_DIR/CLAUDE_PLUGIN_ROOT changes.
    """

    def __init__(self, candidates=None):
        self._candidates = candidates
        self.config: dict[str, Any] | None = None
        self.source: str | None = None
        self.source_path: Path | None = None
        self.mtime: float = 0.0
        self.loaded_at: float = 0.0

    def candidates(self) -> list[tuple[str, Path]]:
        if self._candidates is not None:
            return [(source, Path(path)) for source, path in self._candidates]
        return [
            ("project", Path(get_project_dir()) / PROJECT_CONFIG_RELPATH),
            ("plugin-default", Path(_get_plugin_root()) / PLUGIN_CONFIG_RELPATH),
        ]

    def refresh(self, now: float | None = None) -> dict[str, Any] | None:
        """Return the current config, reloading if source or mtime changed.

        Returns:
            Config dict, or None when no candidate could be loaded.
            Never raises.
        """
        for source, path in self.candidates():
            try:
                mtime = path.stat().st_mtime
            except OSError:
                continue

            if (
                self.config is not None
                and source == self.source
                and path == self.source_path
                and mtime <= self.mtime
            ):
                return self.config

            try:
                with open(path, encoding="utf-8") as f:
                    config = json.load(f)
            except json.JSONDecodeError as e:
                log_guard(
                    "ERROR",
                    f"Invalid JSON in {path}: {e}\n"
                    "  Trying next config location. Fix JSON syntax to restore this config.",
                )
                continue
            except OSError as e:
                log_guard("ERROR", f"Failed to read {path}: {e}\n  Check file permissions.")
                continue

            if not isinstance(config, dict):
                log_guard("ERROR", f"Config root in {path} must be an object")
                continue

            self.config = config
            self.source = source
            self.source_path = path
            self.mtime = mtime
            self.loaded_at = time.time() if now is None else now
            log_guard("INFO", f"Loaded {source} config from {path}")
            for error in validate_guard_config(config):
                log_guard("WARN", f"Config validation: {error}")
            return self.config

        log_guard("WARN", "No document guard config found - allowing all edits")
        self.config = None
        self.source = None
        self.source_path = None
        self.mtime = 0.0
        return None


_config_cache = ConfigCache()


def get_config_cache() -> ConfigCache:
    """Process-wide cache used by the hook entry point."""
    return _config_cache


def get_settings(config: dict[str, Any] | None) -> dict[str, Any]:
    if not config:
        return {}
    settings = config.get("settings")
    return settings if isinstance(settings, dict) else {}


def get_fail_mode(config: dict[str, Any] | None) -> str:
    mode = get_settings(config).get("failMode", "open")
    return mode if mode in VALID_FAIL_MODES else "open"


def validate_guard_config(config: dict) -> list[str]:
    """Validate document guard configuration.

    Performs structural validation:
    - settings values (failMode, overrideTTL, maxViolationsShown)
    - v2 oracle settings (timeout, minContentLength, ollamaUrl, model)
    - rule fields (name, pattern, tier, checks)
    - regex syntax of credential and placeholder patterns

    Problems are reported, never fatal: unknown checks are skipped at
    evaluation time, unknown tiers rank lowest.

    Args:
        config: Loaded configuration dictionary.

    Returns:
        List of validation error messages (empty if valid).
    """
    errors = []

    settings = config.get("settings", {})
    if not isinstance(settings, dict):
        errors.append("settings must be an object")
        settings = {}

    fail_mode = settings.get("failMode", "open")
    if fail_mode not in VALID_FAIL_MODES:
        errors.append(f"Invalid settings.failMode: {fail_mode} (must be: {VALID_FAIL_MODES})")

    for key in ("overrideTTL", "maxViolationsShown"):
        value = settings.get(key)
        if value is not None and (not isinstance(value, (int, float)) or value <= 0):
            errors.append(f"Invalid settings.{key}: {value} (must be positive number)")

    v2 = settings.get("v2", {})
    if not isinstance(v2, dict):
        errors.append("settings.v2 must be an object")
        v2 = {}
    for key in ("timeout", "minContentLength"):
        value = v2.get(key)
        if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0):
            errors.append(f"Invalid settings.v2.{key}: {value!r} (must be positive number)")
    for key in ("ollamaUrl", "model"):
        value = v2.get(key)
        if value is not None and (not isinstance(value, str) or not value):
            errors.append(f"Invalid settings.v2.{key}: {value!r} (must be non-empty string)")

    valid_tiers = {t.value for t in Tier}
    rules = config.get("rules", [])
    if not isinstance(rules, list):
        errors.append("rules must be a list")
        rules = []
    for i, rule in enumerate(rules):
        if not isinstance(rule, dict):
            errors.append(f"rules[{i}] must be an object")
            continue
        if not rule.get("pattern"):
            errors.append(f"rules[{i}] missing 'pattern' field")
        if not rule.get("name"):
            errors.append(f"rules[{i}] missing 'name' field")
        if rule.get("tier") not in valid_tiers:
            errors.append(f"rules[{i}] invalid tier: {rule.get('tier')} (must be: {sorted(valid_tiers)})")
        checks = rule.get("checks")
        if not isinstance(checks, list) or not checks:
            errors.append(f"rules[{i}] 'checks' must be a non-empty list")
            continue
        for check in checks:
            if CheckKind.lookup(check) is None:
                errors.append(f"rules[{i}] unknown check: {check}")

    general = config.get("general", [])
    if not isinstance(general, list):
        errors.append("general must be a list")

    for i, entry in enumerate(config.get("credentialPatterns", []) or []):
        if not isinstance(entry, dict) or "regex" not in entry:
            errors.append(f"credentialPatterns[{i}] must be an object with 'regex'")
            continue
        try:
            regex.compile(entry["regex"])
        except (regex.error, TypeError) as e:
            errors.append(f"Invalid regex in credentialPatterns[{i}]: {e}")

    for i, pattern in enumerate(config.get("placeholderPatterns", []) or []):
        try:
            regex.compile(pattern)
        except (regex.error, TypeError) as e:
            errors.append(f"Invalid regex in placeholderPatterns[{i}]: {e}")

    return errors


# ============================================================
# Toggle Resolution
# ============================================================


def _kill_switch_engaged() -> bool:
    value = os.environ.get(ENABLED_ENV)
    if value is None:
        return False
    return value in ("false", "0", "")


def _positive_number(value: Any, default: int) -> int | float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        return default
    return value


def _non_empty_string(value: Any, default: str) -> str:
    return value if isinstance(value, str) and value else default


def resolve_toggles(config: dict[str, Any]) -> Toggles:
    """Compute which check categories are enabled for this evaluation.

    DOCUMENT_GUARD_ENABLED set to "false", "0" or "" force-disables every
    category regardless of config.
    """
    if _kill_switch_engaged():
        return Toggles()

    settings = get_settings(config)
    v1 = settings.get("v1") if isinstance(settings.get("v1"), dict) else {}
    v2 = settings.get("v2") if isinstance(settings.get("v2"), dict) else {}

    master = settings.get("enabled") is not False
    v1_enabled = master and v1.get("enabled") is not False

    return Toggles(
        master_enabled=master,
        v1_enabled=v1_enabled,
        credential_scan=v1_enabled and v1.get("credentialScan") is not False,
        structural_checks=v1_enabled and v1.get("structuralChecks") is not False,
        v2_enabled=master and v2.get("enabled") is True,
        v2_settings=SemanticSettings(
            ollama_url=_non_empty_string(v2.get("ollamaUrl"), "http://localhost:11434"),
            model=_non_empty_string(v2.get("model"), "qwen2.5:7b-instruct"),
            timeout_ms=_positive_number(v2.get("timeout"), 5000),
            min_content_length=_positive_number(v2.get("minContentLength"), 50),
        ),
    )


# ============================================================
# Path Helpers
# ============================================================


def to_absolute_path(file_path: str) -> Path:
    """Resolve a tool path against the project directory (no symlink resolution)."""
    path = Path(file_path).expanduser()
    if not path.is_absolute():
        path = Path(get_project_dir()) / path
    return Path(os.path.normpath(str(path)))


def is_within_project(absolute_path: Path) -> bool:
    project = Path(os.path.normpath(get_project_dir()))
    try:
        absolute_path.relative_to(project)
        return True
    except ValueError:
        return False


def to_relative_path(absolute_path: Path) -> str:
    """Forward-slash path relative to the project (absolute path if outside)."""
    project = Path(os.path.normpath(get_project_dir()))
    try:
        relative = absolute_path.relative_to(project)
    except ValueError:
        return str(absolute_path).replace("\\", "/")
    return relative.as_posix()


def read_prior_content(absolute_path: Path) -> str | None:
    """Read the current on-disk content of a file.

    Returns:
        File content, or None when the file is missing or unreadable
        (new file: structural comparisons are skipped).
    """
    try:
        with open(absolute_path, encoding="utf-8") as f:
            return f.read()
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError) as e:
        log_guard("WARN", f"Could not read prior content of {truncate_path(str(absolute_path))}: {e}")
        return None


# ============================================================
# Hook Response Helpers
# ============================================================


def allow_response() -> dict[str, Any]:
    return {"proceed": True}


def block_response(message: str) -> dict[str, Any]:
    return {"proceed": False, "message": message}


def context_response(context: str) -> dict[str, Any]:
    """Allow with additional context injected into the conversation."""
    return {
        "proceed": True,
        "hookSpecificOutput": {
            "hookEventName": "PreToolUse",
            "additionalContext": context,
        },
    }


def emit_response(response: dict[str, Any]) -> None:
    print(json.dumps(response))
    sys.stdout.flush()


# ============================================================
# Module Self-Test (when run directly)
# ============================================================


if __name__ == "__main__":
    print("_guard_utils.py - Module loaded successfully")
    print(f"Project dir: {get_project_dir()}")
    print(f"Plugin root: {_get_plugin_root()}")
    print(f"Dry-run mode: {is_dry_run()}")
    cache = get_config_cache()
    print(f"Config loaded: {cache.refresh() is not None} ({cache.source})")
