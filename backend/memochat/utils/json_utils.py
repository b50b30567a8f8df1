from __future__ import annotations

import json
import re
from typing import Any, Mapping


def parse_json_object(content: str) -> Mapping[str, Any] | None:
    """Best-effort parse of a JSON object from a model reply.

    Strips code fences, isolates the outermost braces and retries once
    with trailing commas removed and bare keys quoted.
    """

    extracted = _extract_json_object(_strip_code_fence(content))
    if not extracted:
        return None
    for candidate in _repair_candidates(extracted):
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, Mapping):
            return payload
    return None


def _strip_code_fence(content: str) -> str:
    raw = str(content or "").strip()
    if raw.startswith("```"):
        raw = re.sub(r"^```(?:json)?\s*", "", raw, flags=re.IGNORECASE)
        raw = re.sub(r"\s*```$", "", raw)
    return raw.strip()


def _extract_json_object(content: str) -> str:
    start = content.find("{")
    end = content.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return ""
    return content[start : end + 1].strip()


def _repair_candidates(content: str) -> list[str]:
    candidates = [content]
    repaired = re.sub(r",\s*([}\]])", r"\1", content)
    repaired = re.sub(r'([,{]\s*)([A-Za-z_][A-Za-z0-9_]*)\s*:', r'\1"\2":', repaired)
    if repaired != content:
        candidates.append(repaired)
    return candidates
