"""Shared fixtures: a throwaway SQLite file and storage root, seeded brands and fake collaborators."""

from __future__ import annotations

import io
import os
import tempfile
from pathlib import Path

_TMP_ROOT = Path(tempfile.mkdtemp(prefix="brandvisuals-tests-"))
os.environ["STORAGE_ROOT"] = str(_TMP_ROOT / "storage")
os.environ["DATABASE_URL"] = f"sqlite:///{(_TMP_ROOT / 'test.db').as_posix()}"
os.environ["PUBLIC_BASE_URL"] = "http://testserver"
os.environ["DEFAULT_PLANNER_PROVIDER"] = "mock"
os.environ["DEFAULT_IMAGE_PROVIDER"] = "mock"
os.environ["COMPOSITOR_URL"] = ""

import pytest  # noqa: E402
from PIL import Image  # noqa: E402

from brandvisuals import models  # noqa: E402,F401
from brandvisuals.db import Base, SessionLocal, engine  # noqa: E402
from brandvisuals.errors import ProviderError  # noqa: E402
from brandvisuals.models import Brand  # noqa: E402
from brandvisuals.providers.base import BaseContentPlanner, BaseImageGenerator, GeneratedImage, SlidePlan  # noqa: E402
from brandvisuals.services.coherence import CoherenceScore  # noqa: E402
from brandvisuals.services.compositor_client import LocalCompositor  # noqa: E402
from brandvisuals.services.pipeline import PipelineDeps  # noqa: E402
from brandvisuals.storage import LocalObjectStore  # noqa: E402


def png_bytes(width: int, height: int, color=(30, 90, 220)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeImageGenerator(BaseImageGenerator):
    """Solid backgrounds; queued errors are raised first, one per call."""

    name = "fake"

    def __init__(self, errors=None, always_raise: ProviderError | None = None):
        self.errors = list(errors or [])
        self.always_raise = always_raise
        self.calls: list[dict] = []

    def generate(self, prompt, width, height, *, seed=None, timeout=None) -> GeneratedImage:
        self.calls.append({"prompt": prompt, "width": width, "height": height, "seed": seed, "timeout": timeout})
        if self.always_raise is not None:
            raise self.always_raise
        if self.errors:
            raise self.errors.pop(0)
        # Small canvas keeps the suite fast.
        return GeneratedImage(content=png_bytes(108, 135, (235, 232, 220)), provider=self.name)


class FailingCompositor:
    name = "failing"

    def __init__(self):
        self.calls = 0

    def compose(self, background, layer, *, tint_color=None, tint_strength=0, timeout=None):
        self.calls += 1
        raise RuntimeError("compositor unavailable")

    def delete(self, resource_id):
        return None


class FakeScorer:
    def __init__(self, totals=None, default: float = 90.0):
        self.totals = list(totals or [])
        self.default = default
        self.scored_urls: list[str] = []

    def score(self, asset_url, constraints, reference_url=None) -> CoherenceScore:
        self.scored_urls.append(asset_url)
        total = self.totals.pop(0) if self.totals else self.default
        return CoherenceScore(total=total, breakdown={"fake": True})


class StaticPlanner(BaseContentPlanner):
    name = "static"

    def __init__(self, plans=None, error: Exception | None = None):
        super().__init__()
        self.plans = plans
        self.error = error
        self.calls = 0

    def plan(self, brief, brand_context, slide_count):
        self.calls += 1
        if self.error is not None:
            raise self.error
        if self.plans is not None:
            return list(self.plans)
        return [SlidePlan(title=f"Tip {idx + 1}", subtitle="Short and useful", bullets=["One", "Two"]) for idx in range(slide_count)]


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def other_db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_brand(db):
    def _make(
        brand_id: str = "brand-1",
        *,
        owner_id: str = "user-1",
        quota_visuals: int = 20,
        visuals_used: int = 0,
        forbidden_terms_json: str = "[]",
    ) -> Brand:
        brand = Brand(
            id=brand_id,
            owner_id=owner_id,
            name="Acme Outdoors",
            primary_color="#1E5ADC",
            secondary_color="#FFBF00",
            accent_color=None,
            voice="friendly",
            logo_url="https://cdn.example.com/logo.png",
            default_aspect_ratio="4:5",
            forbidden_terms_json=forbidden_terms_json,
            quota_visuals=quota_visuals,
            quota_videos=2,
            quota_credits=100,
            visuals_used=visuals_used,
        )
        db.add(brand)
        db.commit()
        return brand

    return _make


@pytest.fixture
def store():
    return LocalObjectStore()


@pytest.fixture
def image_generator():
    return FakeImageGenerator()


@pytest.fixture
def scorer():
    return FakeScorer()


@pytest.fixture
def deps(image_generator, store, scorer):
    return PipelineDeps(image_generator=image_generator, compositor=LocalCompositor(), store=store, scorer=scorer)


@pytest.fixture
def planner():
    return StaticPlanner()
