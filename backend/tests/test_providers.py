import base64
import io
import json

import pytest
import requests
from PIL import Image

from brandvisuals.errors import CompositingError, ProviderError
from brandvisuals.providers.http_image_provider import HttpImageGenerator, classify_status
from brandvisuals.providers.mock_provider import MockImageGenerator, MockPlanner
from brandvisuals.services import compositor_client
from brandvisuals.services.compositor_client import CompositorClient, LocalCompositor
from brandvisuals.services.prompt_templates import extract_json_payload, parse_slide_plans
from brandvisuals.services.slide_templates import get_template
from brandvisuals.services.text_layer import build_text_layer

from conftest import png_bytes


class FakeResponse:
    def __init__(self, status_code=200, content=b"", headers=None, payload=None):
        self.status_code = status_code
        self.headers = headers or {}
        self._payload = payload
        self.content = content if payload is None else json.dumps(payload).encode()
        self.text = self.content.decode("utf-8", errors="replace")

    def json(self):
        if self._payload is None:
            raise ValueError("not json")
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")


class FakeSession:
    def __init__(self, post=None, get=None, delete=None):
        self.post_responses = list(post or [])
        self.get_responses = list(get or [])
        self.delete_responses = list(delete or [])
        self.calls: list[tuple[str, str]] = []
        self.timeouts: list[float] = []

    def _next(self, queue, method, url, timeout=None):
        self.calls.append((method, url))
        self.timeouts.append(timeout)
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def post(self, url, **kwargs):
        return self._next(self.post_responses, "POST", url, kwargs.get("timeout"))

    def get(self, url, **kwargs):
        return self._next(self.get_responses, "GET", url, kwargs.get("timeout"))

    def delete(self, url, **kwargs):
        return self._next(self.delete_responses or [FakeResponse(204)], "DELETE", url, kwargs.get("timeout"))


@pytest.mark.parametrize(
    "status_code, kind",
    [(429, "rate_limited"), (402, "insufficient_credit"), (400, "permanent"), (404, "permanent"), (500, "transient"), (503, "transient")],
)
def test_classify_status(status_code, kind):
    assert classify_status(status_code) == kind


def test_raw_image_response_is_returned():
    image = png_bytes(8, 8)
    session = FakeSession(post=[FakeResponse(200, image, {"Content-Type": "image/png"})])

    result = HttpImageGenerator("http://img.local/generate", session=session).generate("sky", 8, 8, seed=7)

    assert result.content == image
    assert result.provider == "http"


def test_base64_json_response_is_decoded():
    image = png_bytes(8, 8)
    payload = {"b64_json": base64.b64encode(image).decode()}
    session = FakeSession(post=[FakeResponse(200, headers={"Content-Type": "application/json"}, payload=payload)])

    result = HttpImageGenerator("http://img.local/generate", session=session).generate("sky", 8, 8)

    assert result.content == image


def test_url_response_is_downloaded():
    image = png_bytes(8, 8)
    session = FakeSession(
        post=[FakeResponse(200, payload={"url": "http://cdn.local/out.png"})],
        get=[FakeResponse(200, image, {"Content-Type": "image/png"})],
    )

    result = HttpImageGenerator("http://img.local/generate", session=session).generate("sky", 8, 8)

    assert result.content == image
    assert session.calls[-1] == ("GET", "http://cdn.local/out.png")


@pytest.mark.parametrize("status_code, kind", [(429, "rate_limited"), (402, "insufficient_credit"), (422, "permanent"), (502, "transient")])
def test_error_statuses_become_typed_provider_errors(status_code, kind):
    session = FakeSession(post=[FakeResponse(status_code, b"nope")])

    with pytest.raises(ProviderError) as excinfo:
        HttpImageGenerator("http://img.local/generate", session=session).generate("sky", 8, 8)

    assert excinfo.value.kind == kind
    assert excinfo.value.status_code == status_code


def test_timeout_is_transient():
    session = FakeSession(post=[requests.Timeout("slow")])

    with pytest.raises(ProviderError) as excinfo:
        HttpImageGenerator("http://img.local/generate", session=session).generate("sky", 8, 8, timeout=3)

    assert excinfo.value.kind == "transient"
    assert excinfo.value.retryable is True


def test_json_without_image_is_permanent():
    session = FakeSession(post=[FakeResponse(200, payload={"status": "ok"})])

    with pytest.raises(ProviderError) as excinfo:
        HttpImageGenerator("http://img.local/generate", session=session).generate("sky", 8, 8)

    assert excinfo.value.kind == "permanent"


def _layer(width=108, height=135):
    layer, _ = build_text_layer(
        {"title": "Hello", "cta": "Go"},
        get_template("hero"),
        width=width,
        height=height,
        background=(255, 255, 255),
    )
    return layer


def test_remote_compositor_cleans_up_uploaded_background():
    output = png_bytes(108, 135)
    session = FakeSession(
        post=[FakeResponse(200, payload={"id": "res-1"}), FakeResponse(200, payload={"url": "http://cdn.local/c.png"})],
        get=[FakeResponse(200, output)],
    )

    result = CompositorClient("http://compositor.local", session=session).compose(
        png_bytes(108, 135), _layer(), tint_color="#1E5ADC", tint_strength=20
    )

    assert result == output
    assert session.calls == [
        ("POST", "http://compositor.local/uploads"),
        ("POST", "http://compositor.local/compose"),
        ("GET", "http://cdn.local/c.png"),
        ("DELETE", "http://compositor.local/resources/res-1"),
    ]


def test_remote_compositor_failure_still_deletes_upload():
    session = FakeSession(post=[FakeResponse(200, payload={"id": "res-2"}), FakeResponse(500, b"boom")])

    with pytest.raises(CompositingError):
        CompositorClient("http://compositor.local", session=session).compose(png_bytes(8, 8), _layer())

    assert session.calls[-1] == ("DELETE", "http://compositor.local/resources/res-2")


def test_remote_compositor_calls_share_one_time_budget():
    session = FakeSession(
        post=[FakeResponse(200, payload={"id": "res-3"}), FakeResponse(200, payload={"url": "http://cdn.local/c.png"})],
        get=[FakeResponse(200, png_bytes(8, 8))],
    )

    CompositorClient("http://compositor.local", session=session).compose(png_bytes(8, 8), _layer(), timeout=5)

    assert len(session.timeouts) == 4
    assert all(0 < timeout <= 5 for timeout in session.timeouts)
    assert session.timeouts == sorted(session.timeouts, reverse=True)


def test_remote_compositor_stops_when_the_budget_is_spent(monkeypatch):
    clock = iter([0.0, 0.0, 10.0, 10.0, 10.0])
    monkeypatch.setattr(compositor_client, "perf_counter", lambda: next(clock))
    session = FakeSession(post=[FakeResponse(200, payload={"id": "res-4"})])

    with pytest.raises(CompositingError, match="ran out of time"):
        CompositorClient("http://compositor.local", session=session).compose(png_bytes(8, 8), _layer(), timeout=5)

    assert [method for method, _ in session.calls] == ["POST", "DELETE"]
    assert session.timeouts == [5.0, compositor_client.CLEANUP_MIN_TIMEOUT_SECONDS]


def test_local_compositor_renders_at_layer_size():
    content = LocalCompositor().compose(png_bytes(20, 20), _layer(216, 270), tint_color="#1E5ADC", tint_strength=45)

    with Image.open(io.BytesIO(content)) as image:
        assert image.size == (216, 270)


def test_mock_generator_is_deterministic_per_seed():
    generator = MockImageGenerator()

    first = generator.generate("sky", 64, 80, seed=11).content
    again = generator.generate("sky", 64, 80, seed=11).content
    other = generator.generate("sky", 64, 80, seed=12).content

    assert first == again
    assert first != other


def test_mock_planner_returns_requested_count():
    plans = MockPlanner().plan("3 ways to save water", {"voice": "friendly"}, 3)

    assert len(plans) == 3
    assert all(plan.title for plan in plans)


def test_planner_json_is_extracted_from_fenced_output():
    raw = 'Sure!\n```json\n{"slides": [{"title": "One", "bullets": ["a", "b"]}, {"title": ""}]}\n```'

    plans = parse_slide_plans(extract_json_payload(raw), 5)

    assert [plan.title for plan in plans] == ["One"]
    assert plans[0].bullets == ["a", "b"]


def test_planner_payload_without_slides_is_rejected():
    with pytest.raises(ValueError):
        parse_slide_plans({"slides": []}, 3)
