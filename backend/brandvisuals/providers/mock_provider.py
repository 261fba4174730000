from __future__ import annotations

import io
import random

import numpy as np
from PIL import Image

from brandvisuals.providers.base import BaseContentPlanner, BaseImageGenerator, GeneratedImage, SlidePlan
from brandvisuals.services.slide_templates import template_for_index


_MIDDLE_TITLES = {
    "problem": "The problem with {topic}",
    "solution": "A better way to handle {topic}",
    "impact": "What changes with {topic}",
}


class MockPlanner(BaseContentPlanner):
    name = "mock"

    def plan(self, brief: str, brand_context: dict, slide_count: int) -> list[SlidePlan]:
        self.reset_warnings()
        topic = " ".join(str(brief or "").split()[:6]) or "your brand"
        plans: list[SlidePlan] = []
        for idx in range(slide_count):
            template = template_for_index(idx, slide_count)
            if template.id == "hero":
                plans.append(SlidePlan(title=topic.capitalize(), subtitle=f"{brand_context.get('name') or 'We'} explain in {slide_count} slides."))
            elif template.id == "cta":
                plans.append(SlidePlan(title="Ready to start?", subtitle="Put it into practice today.", cta="Learn more"))
            else:
                plans.append(
                    SlidePlan(
                        title=_MIDDLE_TITLES[template.id].format(topic=topic.lower())[:60],
                        subtitle=f"Point {idx} of {slide_count - 1}",
                        bullets=[f"Key idea {idx}.1", f"Key idea {idx}.2"],
                    )
                )
        return plans


class MockImageGenerator(BaseImageGenerator):
    """Deterministic gradient backgrounds; the same seed always yields the same image."""

    name = "mock"

    def generate(self, prompt, width, height, *, seed=None, timeout=None) -> GeneratedImage:
        rng = random.Random(seed if seed is not None else hash(prompt))
        start = np.array([rng.randint(0, 255) for _ in range(3)], dtype=np.float32)
        end = np.array([rng.randint(0, 255) for _ in range(3)], dtype=np.float32)
        ramp = np.linspace(0.0, 1.0, int(height), dtype=np.float32)[:, None, None]
        pixels = start + (end - start) * ramp
        pixels = np.broadcast_to(pixels, (int(height), int(width), 3)).astype(np.uint8)

        buffer = io.BytesIO()
        Image.fromarray(pixels).save(buffer, format="PNG")
        return GeneratedImage(content=buffer.getvalue(), provider=self.name)
