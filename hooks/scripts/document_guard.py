#!/usr/bin/env python3
"""Document Guard Hook (PreToolUse).

Validates file edits against protection policies before they are applied:
1. Blocking write-protected files (.env, credentials)
2. Blocking credential leaks in written content
3. Blocking removal of structure (sections, headings, keys, frontmatter, shebangs)
4. Warning on content that does not fit a file's declared purpose (optional, Ollama)

Covers: Edit, Write, MultiEdit, mcp__filesystem__edit_file, mcp__filesystem__write_file

Blocked edits can be retried once after user approval through a
single-use override file (see _guard_overrides.py).

Design Principles:
- Fail-Open: If the guard cannot evaluate an edit, allow it
  (settings.failMode = "closed" blocks on unexpected errors instead)
- Use shared utilities from _guard_utils.py
- Thin wrapper: All logic in run_document_guard_hook()
"""

import json
import sys
from pathlib import Path

# Add hooks directory to path
sys.path.insert(0, str(Path(__file__).parent))

try:
    from _guard_engine import run_document_guard_hook
    from _guard_utils import get_config_cache, get_fail_mode, log_guard
except ImportError as e:
    # Fail-open: a broken install must not block every edit
    print(f"[document-guard] Guard unavailable: {e}", file=sys.stderr)
    print(json.dumps({"proceed": True}))
    sys.exit(0)


def main() -> None:
    """Main hook entry point."""
    run_document_guard_hook()


if __name__ == "__main__":
    try:
        main()
    except Exception as e:
        log_guard("ERROR", f"Document guard error: {type(e).__name__}: {e}")
        if get_fail_mode(get_config_cache().config) == "closed":
            print(json.dumps({"proceed": False, "message": f"Document guard error: {e}"}))
        else:
            print(json.dumps({"proceed": True}))
        sys.exit(0)
