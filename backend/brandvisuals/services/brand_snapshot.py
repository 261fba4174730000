from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any

from brandvisuals.models import Brand
from brandvisuals.services.colors import normalize_hex


SUPPORTED_ASPECT_RATIOS: dict[str, tuple[int, int]] = {
    "1:1": (1080, 1080),
    "4:5": (1080, 1350),
    "9:16": (1080, 1920),
    "16:9": (1920, 1080),
}


def resolution_for(aspect_ratio: str) -> tuple[int, int]:
    return SUPPORTED_ASPECT_RATIOS.get(aspect_ratio, SUPPORTED_ASPECT_RATIOS["4:5"])


@dataclass(frozen=True)
class BrandSnapshot:
    """Brand styling copied onto every job when its set is created.

    Jobs never read the live brand row, so edits made while a set is in
    flight cannot change what gets generated.
    """

    brand_id: str
    name: str
    palette: tuple[str, ...]
    voice: str
    logo_url: str | None
    aspect_ratio: str
    forbidden_terms: tuple[str, ...] = ()

    @property
    def primary_color(self) -> str | None:
        return self.palette[0] if self.palette else None

    @property
    def secondary_color(self) -> str | None:
        return self.palette[1] if len(self.palette) > 1 else None

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: str | dict[str, Any]) -> "BrandSnapshot":
        data = json.loads(raw) if isinstance(raw, str) else dict(raw)
        return cls(
            brand_id=str(data.get("brand_id", "")),
            name=str(data.get("name", "")),
            palette=tuple(data.get("palette") or ()),
            voice=str(data.get("voice") or "professional"),
            logo_url=data.get("logo_url"),
            aspect_ratio=str(data.get("aspect_ratio") or "4:5"),
            forbidden_terms=tuple(data.get("forbidden_terms") or ()),
        )


@dataclass(frozen=True)
class Constraints:
    palette: tuple[str, ...]
    voice: str
    layout_hint: str
    contrast_min: float = 4.5
    no_text: bool = True
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "palette": list(self.palette),
            "voice": self.voice,
            "layout_hint": self.layout_hint,
            "contrast_min": self.contrast_min,
            "no_text": self.no_text,
            **self.extra,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Constraints":
        data = dict(data or {})
        return cls(
            palette=tuple(data.pop("palette", None) or ()),
            voice=str(data.pop("voice", None) or "professional"),
            layout_hint=str(data.pop("layout_hint", None) or "vertical_hero"),
            contrast_min=float(data.pop("contrast_min", 4.5)),
            no_text=bool(data.pop("no_text", True)),
            extra=data,
        )


def snapshot_brand(brand: Brand, aspect_ratio: str) -> BrandSnapshot:
    palette = [
        normalize_hex(color)
        for color in (brand.primary_color, brand.secondary_color, brand.accent_color)
    ]
    try:
        forbidden = json.loads(brand.forbidden_terms_json or "[]")
    except ValueError:
        forbidden = []
    return BrandSnapshot(
        brand_id=brand.id,
        name=brand.name,
        palette=tuple(color for color in palette if color),
        voice=brand.voice or "professional",
        logo_url=brand.logo_url,
        aspect_ratio=aspect_ratio,
        forbidden_terms=tuple(str(term).strip() for term in forbidden if str(term).strip()),
    )


def build_constraints(snapshot: BrandSnapshot, *, contrast_min: float = 4.5) -> Constraints:
    return Constraints(
        palette=snapshot.palette,
        voice=snapshot.voice,
        layout_hint="centered_composition" if snapshot.aspect_ratio == "1:1" else "vertical_hero",
        contrast_min=contrast_min,
        no_text=True,
    )
