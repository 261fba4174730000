from __future__ import annotations

import html
import io
import re
from dataclasses import asdict, dataclass, field
from typing import Any

import numpy as np
from PIL import Image

from brandvisuals.services.colors import contrast_ratio, hex_to_rgb, rgb_to_hex
from brandvisuals.services.slide_templates import SlideTemplate


BASE_WIDTH = 1080
BASE_HEIGHT = 1350

_TAG_RE = re.compile(r"<[^>]*>")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")
_WHITESPACE_RE = re.compile(r"\s+")
_ELLIPSIS = "…"


@dataclass
class TextElement:
    slot_id: str
    kind: str
    text: str
    x: int
    y: int
    size: int
    weight: int
    max_width: int
    align: str = "left"


@dataclass
class TextLayer:
    width: int
    height: int
    color: str
    outline_color: str
    contrast: float
    elements: list[TextElement] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_svg(self) -> str:
        rows = [
            f'<svg xmlns="http://www.w3.org/2000/svg" width="{self.width}" height="{self.height}" '
            f'viewBox="0 0 {self.width} {self.height}">'
        ]
        for element in self.elements:
            anchor = "middle" if element.align == "center" else "start"
            rows.append(
                f'<text x="{element.x}" y="{element.y}" font-family="Inter, Arial, sans-serif" '
                f'font-size="{element.size}" font-weight="{element.weight}" fill="{self.color}" '
                f'stroke="{self.outline_color}" stroke-width="2" paint-order="stroke" '
                f'text-anchor="{anchor}">{html.escape(element.text)}</text>'
            )
        rows.append("</svg>")
        return "".join(rows)


def sanitize_field(value: Any) -> str:
    text = html.unescape(str(value or ""))
    text = _TAG_RE.sub("", text)
    text = _CONTROL_RE.sub("", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def fit_to_budget(text: str, budget: int) -> tuple[str, bool]:
    if budget <= 0 or len(text) <= budget:
        return text, False
    cut = text[: max(1, budget - 1)]
    if " " in cut:
        cut = cut.rsplit(" ", 1)[0]
    return cut.rstrip(" ,.;:-") + _ELLIPSIS, True


def background_tone(content: bytes) -> tuple[int, int, int]:
    with Image.open(io.BytesIO(content)) as image:
        small = np.asarray(image.convert("RGB").resize((32, 32)), dtype=np.float32)
    mean = small.reshape(-1, 3).mean(axis=0)
    return int(mean[0]), int(mean[1]), int(mean[2])


def pick_text_colors(
    background: tuple[int, int, int],
    palette: tuple[str, ...] = (),
    min_contrast: float = 4.5,
) -> tuple[str, str, float]:
    """First brand colour that reads against the background, else black or white; outline is the opposite extreme."""
    candidates = list(palette) + ["#FFFFFF", "#111111"]
    best = ("#FFFFFF", 0.0)
    for color in candidates:
        try:
            ratio = contrast_ratio(hex_to_rgb(color), background)
        except ValueError:
            continue
        if ratio >= min_contrast:
            best = (color, ratio)
            break
        if ratio > best[1]:
            best = (color, ratio)

    fill_rgb = hex_to_rgb(best[0])
    light_outline = contrast_ratio(fill_rgb, (255, 255, 255)) > contrast_ratio(fill_rgb, (0, 0, 0))
    outline = "#FFFFFF" if light_outline else "#000000"
    return rgb_to_hex(fill_rgb), outline, round(best[1], 2)


def build_text_layer(
    metadata: dict[str, Any],
    template: SlideTemplate,
    *,
    width: int,
    height: int,
    background: tuple[int, int, int],
    palette: tuple[str, ...] = (),
    min_contrast: float = 4.5,
) -> tuple[TextLayer, list[str]]:
    warnings: list[str] = []
    x_scale = width / BASE_WIDTH
    y_scale = height / BASE_HEIGHT
    size_scale = min(x_scale, y_scale)

    color, outline, ratio = pick_text_colors(background, palette, min_contrast)
    if ratio < min_contrast:
        warnings.append(f"text contrast {ratio:.2f} below minimum {min_contrast:.2f}")
    layer = TextLayer(width=width, height=height, color=color, outline_color=outline, contrast=ratio)

    for slot in template.slots:
        raw = metadata.get(slot.id)
        values = raw if isinstance(raw, list) else [raw]
        values = [sanitize_field(value) for value in values]
        values = [value for value in values if value]
        if len(values) > slot.max_items:
            warnings.append(f"{slot.id}: dropped {len(values) - slot.max_items} item(s) over limit")
            values = values[: slot.max_items]

        line_gap = int(slot.size * 1.6)
        for offset, value in enumerate(values):
            text, truncated = fit_to_budget(value, slot.max_chars)
            if truncated:
                warnings.append(f"{slot.id}: truncated to {slot.max_chars} chars")
            layer.elements.append(
                TextElement(
                    slot_id=slot.id,
                    kind=slot.kind,
                    text=f"• {text}" if slot.kind == "bullet" else text,
                    x=int(slot.x * x_scale),
                    y=int((slot.y + offset * line_gap) * y_scale),
                    size=max(12, int(slot.size * size_scale)),
                    weight=slot.weight,
                    max_width=int(slot.max_width * x_scale),
                    align=slot.align,
                )
            )
    return layer, warnings
