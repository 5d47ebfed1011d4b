"""
Parsing of LLM responses.

parse_json_from_response is strict: the caller needs an object and gets a
ValidationError otherwise. detect_plan_ready is a heuristic over free chat
text and never raises.
"""

import json
import logging
import re
from typing import Any, Dict, Optional

from .errors import ValidationError

logger = logging.getLogger("plan_parser")

_FENCE_RE = re.compile(r"```(?:\w+)?\s*([\s\S]*?)```")
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_PLAN_MARKERS = ('{"proposedChanges"', '{ "proposedChanges"')


def parse_json_from_response(response: str) -> Dict[str, Any]:
    """
    Extract a JSON object from CLI output.

    Tries, in order: the whole text, the CLI result wrapper
    ({"type": "result", "result": "..."}), then the outermost {...} span.
    """
    text = response.strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = None

    if isinstance(data, dict):
        if data.get("type") == "result" and isinstance(data.get("result"), str):
            return parse_json_from_response(data["result"])
        return data

    match = _OBJECT_RE.search(text)
    if match:
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            return data

    raise ValidationError("No JSON object found in LLM response", {"response": text[:500]})


def _balanced_object(text: str, start: int) -> Optional[str]:
    depth = 0
    for i in range(start, len(text)):
        if text[i] == "{":
            depth += 1
        elif text[i] == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def extract_plan(text: str) -> Optional[Dict[str, Any]]:
    """Return the embedded plan object, or None when there is no complete plan."""
    if not text:
        return None
    content = text
    fence = _FENCE_RE.search(content)
    if fence:
        content = fence.group(1).strip()

    starts = [content.find(marker) for marker in _PLAN_MARKERS]
    starts = [s for s in starts if s >= 0]
    if not starts:
        return None

    candidate = _balanced_object(content, min(starts))
    if candidate is None:
        return None
    try:
        plan = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    if not isinstance(plan, dict) or not plan.get("proposedChanges") or not plan.get("verificationPlan"):
        return None
    return plan


def detect_plan_ready(text: str) -> bool:
    """True when the text carries a complete plan with proposedChanges and verificationPlan."""
    try:
        return extract_plan(text) is not None
    except Exception as e:
        logger.debug(f"Plan detection failed: {e}")
        return False
