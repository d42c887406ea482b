from __future__ import annotations

import json
import re
from typing import Any, Optional

_TRAILING_COMMA = re.compile(r",\s*([}\]])")


def extract_first_balanced_span(text: str) -> str:
    """Return the first balanced ``{...}`` substring of ``text`` or ``""``.

    Scanning starts at the first ``{`` and stops at the brace that brings the
    nesting depth back to zero. Braces inside double-quoted strings are not
    counted. Surrounding prose is ignored.
    """

    raw = str(text or "").strip()
    start = raw.find("{")
    if start < 0:
        return ""

    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(raw)):
        ch = raw[index]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return raw[start : index + 1].strip()
    return ""


def extract_first_balanced_object(text: str) -> Optional[dict[str, Any]]:
    """Parse the first balanced JSON object embedded in free-form model text.

    Returns ``None`` when no object is present or it does not parse; callers
    treat that as "no structured payload".
    """

    candidate = extract_first_balanced_span(text)
    if not candidate:
        return None
    for attempt in _repair_candidates(candidate):
        try:
            payload = json.loads(attempt)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return payload
    return None


def _repair_candidates(content: str) -> list[str]:
    candidates = [content]
    repaired = _TRAILING_COMMA.sub(r"\1", content)
    if repaired != content:
        candidates.append(repaired)
    return candidates
