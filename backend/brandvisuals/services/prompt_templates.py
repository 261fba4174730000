from __future__ import annotations

import json
import re
from typing import Any

from brandvisuals.providers.base import SlidePlan
from brandvisuals.services.slide_templates import template_for_index


_FENCE_STRIP_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE | re.MULTILINE)


def _slide_brief(index: int, total: int) -> dict:
    template = template_for_index(index, total)
    return {
        "index": index,
        "template": template.id,
        "guidance": template.guidance,
        "budgets": {slot.id: slot.max_chars for slot in template.slots},
        "max_bullets": max((slot.max_items for slot in template.slots if slot.kind == "bullet"), default=0),
    }


def build_planning_prompts(*, brief: str, brand_context: dict, slide_count: int) -> tuple[str, str]:
    task_lines = [
        "## Runtime Task (Plan carousel copy)",
        "- You write short on-image copy for a branded social carousel.",
        "- Produce exactly one entry per requested slide, in order.",
        "- Respect every character budget; shorter is better.",
        "- Match the brand voice. Never mention colors, fonts or hex codes.",
        "- Return STRICT JSON only with shape:",
        '{"slides":[{"title":str,"subtitle":str,"bullets":[str],"cta":str}]}',
    ]
    forbidden = brand_context.get("forbidden_terms") or []
    if forbidden:
        task_lines.insert(5, f"- Never use these terms: {', '.join(forbidden)}")

    payload = {
        "task": "plan",
        "brief": brief,
        "brand": {
            "name": brand_context.get("name"),
            "voice": brand_context.get("voice"),
        },
        "slide_count": slide_count,
        "slides": [_slide_brief(idx, slide_count) for idx in range(slide_count)],
    }
    return "\n".join(task_lines), json.dumps(payload)


def plan_output_schema() -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "slides": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "title": {"type": "string"},
                        "subtitle": {"type": "string"},
                        "bullets": {"type": "array", "items": {"type": "string"}},
                        "cta": {"type": "string"},
                    },
                    "required": ["title", "subtitle", "bullets", "cta"],
                    "additionalProperties": False,
                },
            }
        },
        "required": ["slides"],
        "additionalProperties": False,
    }


def _escape_newlines_in_json_strings(text: str) -> str:
    out: list[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if escaped:
            out.append(ch)
            escaped = False
            continue
        if ch == "\\":
            out.append(ch)
            escaped = True
            continue
        if ch == '"':
            out.append(ch)
            in_string = not in_string
            continue
        if in_string and ch in ("\r", "\n"):
            if not out or out[-1] != "\\n":
                out.append("\\n")
            continue
        out.append(ch)
    return "".join(out)


def _repair_json_candidate(text: str) -> str:
    repaired = _escape_newlines_in_json_strings(text)
    repaired = re.sub(r",(\s*[}\]])", r"\1", repaired)
    return repaired


def extract_json_payload(text: str) -> dict[str, Any] | None:
    raw = (text or "").strip()
    if not raw:
        return None

    candidates: list[str] = [raw]
    cleaned = _FENCE_STRIP_RE.sub("", raw).strip()
    if cleaned and cleaned not in candidates:
        candidates.append(cleaned)

    first = cleaned.find("{")
    last = cleaned.rfind("}")
    if first >= 0 and last > first:
        span = cleaned[first : last + 1].strip()
        if span and span not in candidates:
            candidates.append(span)

    for candidate in candidates:
        for attempt in (candidate, _repair_json_candidate(candidate)):
            try:
                payload = json.loads(attempt)
                if isinstance(payload, dict):
                    return payload
            except ValueError:
                continue
    return None


def parse_slide_plans(payload: dict[str, Any] | None, slide_count: int) -> list[SlidePlan]:
    if not isinstance(payload, dict):
        raise ValueError("Planner returned no JSON object")
    rows = payload.get("slides")
    if not isinstance(rows, list):
        raise ValueError("Planner payload has no slides array")
    plans = [SlidePlan.from_dict(row) for row in rows if isinstance(row, dict)]
    plans = [plan for plan in plans if plan.title]
    if not plans:
        raise ValueError("Planner returned zero usable slides")
    return plans[:slide_count]
