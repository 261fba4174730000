"""Brand coherence scoring for finished assets.

Each component is scored 0-100 and combined with fixed weights. When there
is no reference image the style weight is spread over the other components
so totals stay comparable.
"""

from __future__ import annotations

import io
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import requests
from PIL import Image

from brandvisuals.config import settings
from brandvisuals.services.brand_snapshot import Constraints
from brandvisuals.services.colors import MAX_COLOR_DISTANCE, hex_to_rgb, normalize_hex
from brandvisuals.storage import LocalObjectStore


logger = logging.getLogger("brandvisuals.pipeline")

WEIGHTS = {"palette": 0.4, "text": 0.2, "contrast": 0.2, "style": 0.2}
DOMINANT_COLORS = 6
HISTOGRAM_BINS = 8
ANALYSIS_SIZE = (128, 128)


@dataclass
class CoherenceScore:
    total: float
    breakdown: dict[str, Any] = field(default_factory=dict)


def should_regenerate(
    score: CoherenceScore,
    *,
    attempt: int,
    compositing_fell_back: bool,
    threshold: float | None = None,
) -> bool:
    """One quality retry only: low score, first attempt, and a real composite to improve on."""
    limit = settings.coherence_threshold if threshold is None else threshold
    return score.total < limit and attempt == 0 and not compositing_fell_back


def _load_rgb(content: bytes) -> np.ndarray:
    with Image.open(io.BytesIO(content)) as image:
        return np.asarray(image.convert("RGB").resize(ANALYSIS_SIZE), dtype=np.float32)


def dominant_colors(content: bytes, count: int = DOMINANT_COLORS) -> list[tuple[tuple[int, int, int], float]]:
    with Image.open(io.BytesIO(content)) as image:
        small = image.convert("RGB").resize(ANALYSIS_SIZE)
        quantized = small.convert("P", palette=Image.Palette.ADAPTIVE, colors=count)
    raw_palette = quantized.getpalette() or []
    counts = np.bincount(np.asarray(quantized).ravel(), minlength=count)
    total = float(counts.sum()) or 1.0
    rows: list[tuple[tuple[int, int, int], float]] = []
    for index, hits in enumerate(counts[:count]):
        if hits == 0 or len(raw_palette) < (index + 1) * 3:
            continue
        rgb = tuple(raw_palette[index * 3 : index * 3 + 3])
        rows.append((rgb, hits / total))
    rows.sort(key=lambda row: row[1], reverse=True)
    return rows


def _redmean_distance(pixels: np.ndarray, target: np.ndarray) -> np.ndarray:
    rmean = (pixels[..., 0] + target[0]) / 2.0
    delta = pixels - target
    return np.sqrt(
        (2 + rmean / 256) * delta[..., 0] ** 2
        + 4 * delta[..., 1] ** 2
        + (2 + (255 - rmean) / 256) * delta[..., 2] ** 2
    )


def palette_score(content: bytes, palette: tuple[str, ...]) -> tuple[float, dict[str, Any]]:
    brand = [hex_to_rgb(color) for color in palette if normalize_hex(color)]
    colors = dominant_colors(content)
    if not brand:
        return 100.0, {"dominant": [], "reason": "no brand palette"}

    brand_array = np.array(brand, dtype=np.float32)
    weighted = 0.0
    for rgb, share in colors:
        distances = _redmean_distance(brand_array, np.array(rgb, dtype=np.float32))
        weighted += share * float(distances.min())
    # Half the colour space away already counts as off-brand.
    normalized = min(1.0, weighted / (MAX_COLOR_DISTANCE * 0.5))
    return round(100.0 * (1.0 - normalized), 2), {
        "dominant": ["#%02X%02X%02X" % rgb for rgb, _ in colors],
        "mean_distance": round(weighted, 2),
    }


def contrast_score(content: bytes, contrast_min: float) -> tuple[float, dict[str, Any]]:
    pixels = _load_rgb(content) / 255.0
    linear = np.where(pixels <= 0.03928, pixels / 12.92, ((pixels + 0.055) / 1.055) ** 2.4)
    luminance = 0.2126 * linear[..., 0] + 0.7152 * linear[..., 1] + 0.0722 * linear[..., 2]
    low, high = np.percentile(luminance, [5, 95])
    ratio = (float(high) + 0.05) / (float(low) + 0.05)
    score = min(1.0, ratio / max(contrast_min, 1.0)) * 100.0
    return round(score, 2), {"ratio": round(ratio, 2), "required": contrast_min}


def style_score(content: bytes, reference: bytes) -> tuple[float, dict[str, Any]]:
    def histogram(raw: bytes) -> np.ndarray:
        pixels = _load_rgb(raw).reshape(-1, 3)
        hist, _ = np.histogramdd(pixels, bins=HISTOGRAM_BINS, range=[(0, 256)] * 3)
        return hist / max(1.0, hist.sum())

    intersection = float(np.minimum(histogram(content), histogram(reference)).sum())
    return round(100.0 * intersection, 2), {"histogram_intersection": round(intersection, 4)}


def _default_loader(url: str) -> bytes:
    store = LocalObjectStore()
    path = store.path_from_url(url)
    if path is not None:
        return store.get(path)
    response = requests.get(url, timeout=settings.external_call_timeout_seconds)
    response.raise_for_status()
    return response.content


class CoherenceEvaluator:
    def __init__(
        self,
        loader: Callable[[str], bytes] | None = None,
        text_detector: Callable[[bytes], float] | None = None,
    ):
        self.loader = loader or _default_loader
        self.text_detector = text_detector

    def score(self, asset_url: str, constraints: Constraints, reference_url: str | None = None) -> CoherenceScore:
        content = self.loader(asset_url)
        reference = None
        if reference_url and reference_url != asset_url:
            try:
                reference = self.loader(reference_url)
            except Exception:
                logger.warning("coherence_reference_unavailable url=%s", reference_url, exc_info=True)
        return self.score_image(content, constraints, reference=reference)

    def score_image(self, content: bytes, constraints: Constraints, reference: bytes | None = None) -> CoherenceScore:
        components: dict[str, float] = {}
        details: dict[str, Any] = {}

        components["palette"], details["palette"] = palette_score(content, constraints.palette)
        components["contrast"], details["contrast"] = contrast_score(content, constraints.contrast_min)

        if self.text_detector is not None:
            probability = max(0.0, min(1.0, float(self.text_detector(content))))
            components["text"] = round(100.0 * (1.0 - probability), 2)
            details["text"] = {"text_probability": round(probability, 3)}
        else:
            components["text"] = 100.0
            details["text"] = {"detector": None}

        if reference is not None:
            components["style"], details["style"] = style_score(content, reference)

        weight_sum = sum(WEIGHTS[name] for name in components)
        total = sum(components[name] * WEIGHTS[name] for name in components) / weight_sum
        breakdown = {
            "components": components,
            "weights": {name: round(WEIGHTS[name] / weight_sum, 4) for name in components},
            "details": details,
        }
        return CoherenceScore(total=round(total, 2), breakdown=breakdown)
