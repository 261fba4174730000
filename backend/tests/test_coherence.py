import pytest

from brandvisuals.services.brand_snapshot import Constraints
from brandvisuals.services.coherence import (
    CoherenceEvaluator,
    CoherenceScore,
    palette_score,
    should_regenerate,
    style_score,
)

from conftest import png_bytes


CONSTRAINTS = Constraints(palette=("#1E5ADC", "#FFBF00"), voice="friendly", layout_hint="vertical_hero")


@pytest.mark.parametrize(
    "total, attempt, fell_back, expected",
    [
        (40.0, 0, False, True),
        (59.9, 0, False, True),
        (60.0, 0, False, False),
        (40.0, 1, False, False),
        (40.0, 0, True, False),
    ],
)
def test_should_regenerate(total, attempt, fell_back, expected):
    score = CoherenceScore(total=total)

    assert should_regenerate(score, attempt=attempt, compositing_fell_back=fell_back, threshold=60.0) is expected


def test_on_brand_image_beats_off_brand_image_on_palette():
    on_brand, details = palette_score(png_bytes(64, 64, (30, 90, 220)), CONSTRAINTS.palette)
    off_brand, _ = palette_score(png_bytes(64, 64, (20, 200, 40)), CONSTRAINTS.palette)

    assert on_brand > 95
    assert on_brand > off_brand
    assert details["dominant"]


def test_missing_palette_is_not_penalized():
    score, details = palette_score(png_bytes(16, 16), ())

    assert score == 100.0
    assert details["reason"] == "no brand palette"


def test_style_of_identical_images_is_perfect():
    content = png_bytes(32, 32, (200, 120, 40))

    score, _ = style_score(content, content)

    assert score == pytest.approx(100.0)
    assert style_score(content, png_bytes(32, 32, (10, 10, 10)))[0] == pytest.approx(0.0)


def test_weights_are_redistributed_without_a_reference():
    evaluator = CoherenceEvaluator(loader=lambda url: png_bytes(32, 32, (30, 90, 220)))

    score = evaluator.score("http://testserver/files/a.png", CONSTRAINTS)

    assert "style" not in score.breakdown["components"]
    assert sum(score.breakdown["weights"].values()) == pytest.approx(1.0)
    assert 0 <= score.total <= 100


def test_reference_adds_style_component():
    images = {
        "http://testserver/files/a.png": png_bytes(32, 32, (30, 90, 220)),
        "http://testserver/files/key.png": png_bytes(32, 32, (30, 90, 220)),
    }
    evaluator = CoherenceEvaluator(loader=images.__getitem__)

    score = evaluator.score("http://testserver/files/a.png", CONSTRAINTS, reference_url="http://testserver/files/key.png")

    assert score.breakdown["components"]["style"] == pytest.approx(100.0)
    assert score.breakdown["weights"]["palette"] == pytest.approx(0.4)


def test_unreachable_reference_is_skipped():
    def loader(url):
        if url.endswith("key.png"):
            raise OSError("gone")
        return png_bytes(32, 32)

    score = CoherenceEvaluator(loader=loader).score("http://x/a.png", CONSTRAINTS, reference_url="http://x/key.png")

    assert "style" not in score.breakdown["components"]


def test_text_detector_lowers_the_text_component():
    evaluator = CoherenceEvaluator(loader=lambda url: png_bytes(32, 32), text_detector=lambda content: 1.0)

    score = evaluator.score("http://x/a.png", CONSTRAINTS)

    assert score.breakdown["components"]["text"] == 0.0
