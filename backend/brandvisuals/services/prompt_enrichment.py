from __future__ import annotations

import re
from dataclasses import dataclass, field

from brandvisuals.services.brand_snapshot import BrandSnapshot
from brandvisuals.services.colors import palette_names
from brandvisuals.services.slide_templates import SlideTemplate


TRADEMARK_REPLACEMENTS: dict[str, str] = {
    "coca-cola": "a refreshing cola beverage",
    "coca cola": "a refreshing cola beverage",
    "pepsi": "a refreshing cola drink",
    "red bull": "an energy drink can",
    "starbucks": "a premium coffee cup",
    "iphone": "a modern smartphone",
    "ipad": "a modern tablet",
    "macbook": "a sleek laptop",
    "tesla": "an electric vehicle",
    "playstation": "a gaming console",
    "xbox": "a gaming console",
    "nike": "athletic sportswear",
    "adidas": "athletic sportswear",
    "rolex": "a luxury wristwatch",
    "louis vuitton": "a designer luxury bag",
    "gucci": "a luxury fashion item",
    "mcdonald's": "a fast food restaurant",
    "mcdonalds": "a fast food restaurant",
    "ferrari": "a red sports car",
    "lamborghini": "an exotic sports car",
    "netflix": "a streaming service interface",
    "instagram": "a social media app",
    "tiktok": "a short video app",
    "lego": "building blocks",
    "barbie": "a fashion doll",
}

_PERSON_REFERENCE_PATTERNS = [
    re.compile(r"(?:from|in|with)\s+(?:the\s+)?(?:attached|uploaded|provided|reference|my)\s+(?:photo|image|picture)", re.IGNORECASE),
    re.compile(r"\b(?:celebrity|famous actor|famous actress|politician)\b", re.IGNORECASE),
]

# Bare six-char codes must mix digits and letters so words like "facade" survive.
_HEX_LITERAL_RE = re.compile(
    r"#[0-9A-Fa-f]{6}\b|#[0-9A-Fa-f]{3}\b|\b(?=[0-9A-Fa-f]*\d)(?=[0-9A-Fa-f]*[A-Fa-f])[0-9A-Fa-f]{6}\b"
)
_RGB_LITERAL_RE = re.compile(r"\brgba?\(\s*\d{1,3}\s*,\s*\d{1,3}\s*,\s*\d{1,3}\s*(?:,\s*[\d.]+\s*)?\)", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s{2,}")

NO_TEXT_CLAUSE = "No text, letters, words, logos or watermarks anywhere in the image."

_LAYOUT_HINTS = {
    "hero": "Strong focal subject with generous empty space in the upper half for a headline.",
    "problem": "Slightly tense mood, clear negative space on the left for copy.",
    "solution": "Bright, optimistic mood with clean negative space for a short list.",
    "impact": "Confident, uplifting scene with calm negative space.",
    "cta": "Minimal, uncluttered composition centered for a closing call to action.",
}


@dataclass
class EnrichedPrompt:
    text: str
    palette_names: list[str]
    replaced_terms: list[str] = field(default_factory=list)
    removed_terms: list[str] = field(default_factory=list)


def _replace_trademarks(text: str) -> tuple[str, list[str]]:
    replaced: list[str] = []
    # Longest names first so "coca cola" wins over shorter overlaps.
    for name in sorted(TRADEMARK_REPLACEMENTS, key=len, reverse=True):
        pattern = re.compile(rf"(?<![\w-]){re.escape(name)}(?![\w-])", re.IGNORECASE)
        if pattern.search(text):
            text = pattern.sub(TRADEMARK_REPLACEMENTS[name], text)
            replaced.append(name)
    return text, replaced


def _remove_forbidden(text: str, forbidden_terms: tuple[str, ...]) -> tuple[str, list[str]]:
    removed: list[str] = []
    for term in forbidden_terms:
        pattern = re.compile(rf"\b{re.escape(term)}\b", re.IGNORECASE)
        if pattern.search(text):
            text = pattern.sub("", text)
            removed.append(term)
    return text, removed


def strip_color_literals(text: str) -> str:
    text = _HEX_LITERAL_RE.sub("", text)
    text = _RGB_LITERAL_RE.sub("", text)
    return text


def sanitize_prompt(text: str, forbidden_terms: tuple[str, ...] = ()) -> tuple[str, list[str], list[str]]:
    cleaned = strip_color_literals(str(text or ""))
    cleaned, replaced = _replace_trademarks(cleaned)
    cleaned, removed = _remove_forbidden(cleaned, forbidden_terms)
    for pattern in _PERSON_REFERENCE_PATTERNS:
        cleaned = pattern.sub("a person", cleaned)
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip(" ,.;")
    return cleaned, replaced, removed


def enrich_prompt(prompt: str, snapshot: BrandSnapshot, template: SlideTemplate | None = None) -> EnrichedPrompt:
    """Background prompt for one slide: palette in words, brand voice, no literal colour codes."""
    subject, replaced, removed = sanitize_prompt(prompt, snapshot.forbidden_terms)
    names = palette_names(list(snapshot.palette))

    parts = [f"Background image for a social media slide about: {subject or 'the brand'}."]
    if names:
        parts.append(f"Color palette dominated by {', '.join(names)}.")
    parts.append(f"Mood matches a {snapshot.voice} brand voice.")
    if template is not None and template.id in _LAYOUT_HINTS:
        parts.append(_LAYOUT_HINTS[template.id])
    parts.append(NO_TEXT_CLAUSE)

    text = strip_color_literals(" ".join(parts))
    return EnrichedPrompt(
        text=_WHITESPACE_RE.sub(" ", text).strip(),
        palette_names=names,
        replaced_terms=replaced,
        removed_terms=removed,
    )
