from brandvisuals.config import settings
from brandvisuals.providers.anthropic_provider import AnthropicPlanner
from brandvisuals.providers.base import BaseContentPlanner, BaseImageGenerator
from brandvisuals.providers.http_image_provider import HttpImageGenerator
from brandvisuals.providers.mock_provider import MockImageGenerator, MockPlanner
from brandvisuals.providers.openai_provider import OpenAIPlanner
from brandvisuals.services.compositor_client import CompositorClient, LocalCompositor


def get_planner(name: str | None = None) -> BaseContentPlanner:
    candidate = (name or settings.default_planner_provider).lower()

    if candidate == "openai" and settings.openai_api_key:
        return OpenAIPlanner(settings.openai_api_key)
    if candidate == "anthropic" and settings.anthropic_api_key:
        return AnthropicPlanner(settings.anthropic_api_key)

    return MockPlanner()


def get_image_generator(name: str | None = None) -> BaseImageGenerator:
    candidate = (name or settings.default_image_provider).lower()

    if candidate == "http" and settings.image_api_url:
        return HttpImageGenerator(settings.image_api_url, settings.image_api_key)

    return MockImageGenerator()


def get_compositor() -> CompositorClient | LocalCompositor:
    if settings.compositor_url:
        return CompositorClient(settings.compositor_url, settings.compositor_api_key)
    return LocalCompositor()
