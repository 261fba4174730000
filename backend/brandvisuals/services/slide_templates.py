from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class TextSlot:
    id: str
    kind: str
    size: int
    weight: int
    x: int
    y: int
    max_width: int
    max_chars: int
    max_items: int = 1
    align: str = "left"


@dataclass(frozen=True)
class SlideTemplate:
    id: str
    guidance: str
    slots: tuple[TextSlot, ...]
    safe_zone: tuple[int, int, int, int] = (80, 60, 120, 60)
    logo_zone: tuple[int, int, int, int] = (900, 1200, 120, 120)
    budgets: dict[str, int] = field(default_factory=dict)

    def slot(self, slot_id: str) -> TextSlot | None:
        for row in self.slots:
            if row.id == slot_id:
                return row
        return None

    def budget(self, slot_id: str) -> int:
        row = self.slot(slot_id)
        return row.max_chars if row else 0


# Geometry is expressed for a 1080px wide canvas; y values scale with height.
SLIDE_TEMPLATES: dict[str, SlideTemplate] = {
    "hero": SlideTemplate(
        id="hero",
        guidance="Open with a bold promise. Short title, one supporting line.",
        slots=(
            TextSlot("title", "title", 72, 700, 60, 200, 960, 60),
            TextSlot("subtitle", "subtitle", 32, 400, 60, 400, 960, 120),
            TextSlot("cta", "cta", 28, 600, 540, 1100, 300, 24, align="center"),
        ),
    ),
    "problem": SlideTemplate(
        id="problem",
        guidance="Name the pain point concretely.",
        slots=(
            TextSlot("title", "title", 64, 700, 60, 150, 960, 70),
            TextSlot("subtitle", "subtitle", 30, 400, 60, 380, 960, 110),
            TextSlot("bullets", "bullet", 28, 400, 60, 560, 960, 70, max_items=3),
        ),
    ),
    "solution": SlideTemplate(
        id="solution",
        guidance="Show the fix as concrete, actionable steps.",
        slots=(
            TextSlot("title", "title", 64, 700, 60, 150, 960, 70),
            TextSlot("subtitle", "subtitle", 30, 400, 60, 380, 960, 110),
            TextSlot("bullets", "bullet", 28, 400, 60, 560, 960, 70, max_items=4),
        ),
    ),
    "impact": SlideTemplate(
        id="impact",
        guidance="Quantify the result or benefit.",
        slots=(
            TextSlot("title", "title", 64, 700, 60, 150, 960, 60),
            TextSlot("subtitle", "subtitle", 30, 400, 60, 360, 960, 100),
            TextSlot("bullets", "bullet", 28, 400, 60, 540, 960, 60, max_items=3),
        ),
    ),
    "cta": SlideTemplate(
        id="cta",
        guidance="Close with one clear next action.",
        slots=(
            TextSlot("title", "title", 64, 700, 60, 300, 960, 60),
            TextSlot("subtitle", "subtitle", 32, 400, 60, 500, 960, 100),
            TextSlot("cta", "cta", 28, 600, 540, 800, 400, 30, align="center"),
        ),
    ),
}

_MIDDLE_CYCLE = ("problem", "solution", "impact")


def template_for_index(index: int, total: int) -> SlideTemplate:
    if index == 0:
        return SLIDE_TEMPLATES["hero"]
    if total > 1 and index == total - 1:
        return SLIDE_TEMPLATES["cta"]
    return SLIDE_TEMPLATES[_MIDDLE_CYCLE[(index - 1) % len(_MIDDLE_CYCLE)]]


def get_template(template_id: str) -> SlideTemplate:
    template = SLIDE_TEMPLATES.get(template_id)
    if template is None:
        raise KeyError(f"Unknown slide template: {template_id}")
    return template
