from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class SlidePlan:
    title: str
    subtitle: str = ""
    bullets: list[str] = field(default_factory=list)
    cta: str = ""

    def to_metadata(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "subtitle": self.subtitle,
            "bullets": list(self.bullets),
            "cta": self.cta,
        }

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> "SlidePlan":
        bullets = row.get("bullets") or []
        if isinstance(bullets, str):
            bullets = [line for line in bullets.splitlines() if line.strip()]
        return cls(
            title=str(row.get("title") or "").strip(),
            subtitle=str(row.get("subtitle") or "").strip(),
            bullets=[str(item).strip() for item in bullets if str(item).strip()],
            cta=str(row.get("cta") or "").strip(),
        )


@dataclass
class GeneratedImage:
    content: bytes | None = None
    url: str | None = None
    provider: str = "unknown"


class BaseContentPlanner:
    name = "base"
    last_warnings: list[str]

    def __init__(self):
        self.last_warnings = []

    def reset_warnings(self) -> None:
        self.last_warnings = []

    def plan(self, brief: str, brand_context: dict, slide_count: int) -> list[SlidePlan]:
        """Return up to `slide_count` slide plans. Fewer is allowed; raising means planning failed."""
        raise NotImplementedError


class BaseImageGenerator:
    name = "base"

    def generate(
        self,
        prompt: str,
        width: int,
        height: int,
        *,
        seed: int | None = None,
        timeout: float | None = None,
    ) -> GeneratedImage:
        raise NotImplementedError
