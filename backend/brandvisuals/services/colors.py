from __future__ import annotations

import re

_HEX6_RE = re.compile(r"^#?([0-9A-Fa-f]{6})$")
_HEX3_RE = re.compile(r"^#?([0-9A-Fa-f]{3})$")

# Small vocabulary used to describe a palette in words instead of hex codes.
NAMED_COLORS: dict[str, tuple[int, int, int]] = {
    "black": (0, 0, 0),
    "charcoal": (54, 69, 79),
    "slate gray": (112, 128, 144),
    "silver": (192, 192, 192),
    "white": (255, 255, 255),
    "ivory": (255, 255, 240),
    "beige": (245, 245, 220),
    "sand": (194, 178, 128),
    "brown": (139, 69, 19),
    "terracotta": (226, 114, 91),
    "maroon": (128, 0, 0),
    "crimson": (220, 20, 60),
    "red": (230, 40, 40),
    "coral": (255, 127, 80),
    "orange": (255, 140, 0),
    "amber": (255, 191, 0),
    "gold": (212, 175, 55),
    "yellow": (255, 230, 0),
    "olive": (128, 128, 0),
    "lime": (140, 220, 60),
    "green": (34, 139, 34),
    "emerald": (80, 200, 120),
    "mint": (152, 255, 152),
    "teal": (0, 128, 128),
    "turquoise": (64, 224, 208),
    "cyan": (0, 200, 220),
    "sky blue": (135, 206, 235),
    "blue": (30, 90, 220),
    "royal blue": (65, 105, 225),
    "navy": (0, 0, 128),
    "indigo": (75, 0, 130),
    "purple": (128, 0, 128),
    "violet": (143, 0, 255),
    "lavender": (200, 180, 240),
    "magenta": (255, 0, 255),
    "pink": (255, 160, 190),
    "rose": (255, 0, 127),
}


def normalize_hex(value: str | None) -> str | None:
    raw = str(value or "").strip()
    match = _HEX6_RE.match(raw)
    if match:
        return "#" + match.group(1).upper()
    match = _HEX3_RE.match(raw)
    if match:
        return "#" + "".join(ch * 2 for ch in match.group(1)).upper()
    return None


def hex_to_rgb(value: str) -> tuple[int, int, int]:
    normalized = normalize_hex(value)
    if normalized is None:
        raise ValueError(f"Invalid hex color: {value!r}")
    return int(normalized[1:3], 16), int(normalized[3:5], 16), int(normalized[5:7], 16)


def rgb_to_hex(rgb: tuple[int, int, int]) -> str:
    r, g, b = (max(0, min(255, int(round(c)))) for c in rgb)
    return f"#{r:02X}{g:02X}{b:02X}"


def _channel(c: float) -> float:
    c = c / 255.0
    return c / 12.92 if c <= 0.03928 else ((c + 0.055) / 1.055) ** 2.4


def relative_luminance(rgb: tuple[int, int, int]) -> float:
    r, g, b = rgb
    return 0.2126 * _channel(r) + 0.7152 * _channel(g) + 0.0722 * _channel(b)


def contrast_ratio(fg: tuple[int, int, int], bg: tuple[int, int, int]) -> float:
    l1 = relative_luminance(fg)
    l2 = relative_luminance(bg)
    lighter, darker = max(l1, l2), min(l1, l2)
    return (lighter + 0.05) / (darker + 0.05)


def color_distance(a: tuple[int, int, int], b: tuple[int, int, int]) -> float:
    # Weighted euclidean ("redmean") approximation of perceived distance.
    rmean = (a[0] + b[0]) / 2.0
    dr, dg, db = a[0] - b[0], a[1] - b[1], a[2] - b[2]
    return ((2 + rmean / 256) * dr * dr + 4 * dg * dg + (2 + (255 - rmean) / 256) * db * db) ** 0.5


MAX_COLOR_DISTANCE = color_distance((0, 0, 0), (255, 255, 255))


def nearest_color_name(value: str) -> str:
    rgb = hex_to_rgb(value)
    return min(NAMED_COLORS.items(), key=lambda item: color_distance(rgb, item[1]))[0]


def palette_names(palette: list[str]) -> list[str]:
    names: list[str] = []
    for color in palette:
        if normalize_hex(color) is None:
            continue
        name = nearest_color_name(color)
        if name not in names:
            names.append(name)
    return names
