"""Best-effort JSON reconstruction from truncated prefixes.

Tool-call arguments arrive as arbitrary fragments of a JSON document. The
helpers here turn whatever prefix has been received so far into the most
complete value that can be recovered from it.

The healing strategy:
    1. Try a strict parse.
    2. Scan the prefix tracking string/escape state and the stack of open
       containers, then close an unterminated string and every open
       container innermost-first.
    3. If the healed text still does not parse (a key without a value, a
       partial literal such as ``tru``, a number ending in ``-`` or ``.``),
       cut back to the last complete element and heal again.

None of the functions raise; ``None`` means nothing could be recovered.
"""

import json
import re
from typing import Any, List, Optional, Tuple

# A \u escape cut short; only when its backslash is not itself escaped.
_PARTIAL_UNICODE_ESCAPE = re.compile(r"((?:^|[^\\])(?:\\\\)*)\\u[0-9a-fA-F]{0,3}$")

_CLOSERS = {"{": "}", "[": "]"}


def _loads(text: str) -> Tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except (ValueError, RecursionError):
        return False, None


def _scan(text: str) -> Tuple[List[str], bool, bool, List[int]]:
    """Scan a prefix outside-in.

    Returns:
        (open container stack, inside string, pending escape, cut points).
        Cut points are offsets at which the prefix ends right after a
        complete element (or right after a container was opened).
    """
    stack: List[str] = []
    cuts: List[int] = []
    in_string = False
    escape = False

    for i, ch in enumerate(text):
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append(ch)
            cuts.append(i + 1)
        elif ch in "}]":
            if stack and _CLOSERS[stack[-1]] == ch:
                stack.pop()
            cuts.append(i + 1)
        elif ch == ",":
            cuts.append(i)

    return stack, in_string, escape, cuts


def _heal(prefix: str) -> str:
    """Close whatever is left open at the end of ``prefix``."""
    stack, in_string, escape, _ = _scan(prefix)
    healed = prefix

    if in_string:
        if escape:
            healed = healed[:-1]
        healed = _PARTIAL_UNICODE_ESCAPE.sub(r"\1", healed)
        healed += '"'

    healed = healed.rstrip()
    if healed.endswith(","):
        healed = healed[:-1]

    for opener in reversed(stack):
        healed += _CLOSERS[opener]
    return healed


def parse_partial_json(text: Optional[str]) -> Optional[Any]:
    """Return the most complete value parseable from a JSON prefix.

    Args:
        text: A (possibly truncated) JSON document.

    Returns:
        The recovered value, or None when nothing can be recovered.
    """
    if not text:
        return None
    source = text.strip()
    if not source:
        return None

    ok, value = _loads(source)
    if ok:
        return value

    ok, value = _loads(_heal(source))
    if ok:
        return value

    _, _, _, cuts = _scan(source)
    for cut in reversed(cuts):
        if cut <= 0 or cut >= len(source):
            continue
        ok, value = _loads(_heal(source[:cut]))
        if ok:
            return value
    return None


def parse_final_json(text: Optional[str]) -> Optional[Any]:
    """Parse a completed argument buffer, strict first then best-effort."""
    if not text:
        return None
    ok, value = _loads(text)
    if ok:
        return value
    return parse_partial_json(text)
