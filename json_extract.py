#!/usr/bin/env python3
"""Extract JSON payloads from free-form model text.

Model replies wrap JSON in reasoning tags, markdown fences and prose.
Payloads are located with a depth-counted, string-aware bracket scanner:
brackets inside strings or nested objects never end a match.
"""

from __future__ import annotations

import json
import re
from typing import Any, List, Optional

_THINK_RE = re.compile(r"<think>[\s\S]*?</think>", re.IGNORECASE)
_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)

_CLOSERS = {"[": "]", "{": "}"}


def strip_reasoning(text: str) -> str:
    """Drop <think> blocks and unwrap the first markdown code fence."""
    cleaned = _THINK_RE.sub("", text or "").strip()
    fenced = _FENCE_RE.search(cleaned)
    if fenced:
        cleaned = fenced.group(1).strip()
    return cleaned


def find_closing_bracket(text: str, open_idx: int) -> int:
    """Index of the bracket closing the one at ``open_idx``; -1 if unbalanced."""
    opener = text[open_idx]
    closer = _CLOSERS.get(opener)
    if closer is None:
        return -1
    depth = 0
    in_str = False
    escape = False
    for idx in range(open_idx, len(text)):
        ch = text[idx]
        if in_str:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == "\"":
                in_str = False
            continue
        if ch == "\"":
            in_str = True
            continue
        if ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return idx
    return -1


def extract_block(text: str, opener: str) -> Optional[str]:
    """First balanced ``[...]`` or ``{...}`` block in ``text``."""
    start = text.find(opener)
    if start < 0:
        return None
    end = find_closing_bracket(text, start)
    if end < 0:
        return None
    return text[start : end + 1]


def _loads(candidate: Optional[str]) -> Optional[Any]:
    if not candidate:
        return None
    try:
        return json.loads(candidate)
    except (TypeError, ValueError):
        return None


def extract_json_array(text: str) -> Optional[List[Any]]:
    parsed = _loads(extract_block(text, "["))
    return parsed if isinstance(parsed, list) else None


def extract_json_object(text: str) -> Optional[dict]:
    parsed = _loads(extract_block(text, "{"))
    return parsed if isinstance(parsed, dict) else None


def safe_json_object(text: str) -> Optional[dict]:
    """Best-effort dict from model output (whole text first, then scanner)."""
    if text is None:
        return None
    raw = str(text).strip()
    if not raw:
        return None
    cleaned = strip_reasoning(raw)
    for cand in (cleaned, raw):
        parsed = _loads(cand)
        if isinstance(parsed, dict):
            return parsed
    return extract_json_object(cleaned) or extract_json_object(raw)
