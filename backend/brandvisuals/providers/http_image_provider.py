import base64
import logging
from time import perf_counter

import requests

from brandvisuals.config import settings
from brandvisuals.errors import ProviderError
from brandvisuals.providers.base import BaseImageGenerator, GeneratedImage
from brandvisuals.services.job_trace import preview_text


logger = logging.getLogger("brandvisuals.providers")


def classify_status(status_code: int) -> str:
    if status_code == 429:
        return "rate_limited"
    if status_code == 402:
        return "insufficient_credit"
    if 400 <= status_code < 500:
        return "permanent"
    return "transient"


class HttpImageGenerator(BaseImageGenerator):
    """Image backend reached over plain HTTP.

    The endpoint receives ``{prompt, width, height, seed}`` and answers with
    raw image bytes, or JSON carrying either ``b64_json`` or ``url``.
    """

    name = "http"

    def __init__(self, api_url: str, api_key: str | None = None, session: requests.Session | None = None):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.session = session or requests.Session()

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "image/png, application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _raise_for_status(self, response: requests.Response) -> None:
        if response.status_code < 400:
            return
        kind = classify_status(response.status_code)
        raise ProviderError(
            f"Image provider returned HTTP {response.status_code}: {preview_text(response.text, 160)}",
            kind=kind,
            status_code=response.status_code,
        )

    def generate(self, prompt, width, height, *, seed=None, timeout=None) -> GeneratedImage:
        call_timeout = float(timeout or settings.external_call_timeout_seconds)
        payload = {"prompt": prompt, "width": int(width), "height": int(height), "seed": seed}
        started = perf_counter()
        logger.info(
            "image_request_start provider=%s size=%dx%d seed=%s timeout=%.1f prompt_preview=%s",
            self.name,
            width,
            height,
            seed,
            call_timeout,
            preview_text(prompt, 160),
        )
        try:
            response = self.session.post(self.api_url, json=payload, headers=self._headers(), timeout=call_timeout)
        except requests.Timeout as exc:
            raise ProviderError(f"Image provider timed out after {call_timeout:.0f}s", kind="transient") from exc
        except requests.RequestException as exc:
            raise ProviderError(f"Image provider unreachable: {exc}", kind="transient") from exc

        self._raise_for_status(response)
        content_type = response.headers.get("Content-Type", "")
        if content_type.startswith("image/"):
            content = response.content
        else:
            content = self._content_from_json(response, call_timeout)

        if not content:
            raise ProviderError("Image provider returned an empty image", kind="permanent")
        logger.info(
            "image_request_done provider=%s duration_sec=%.2f bytes=%d",
            self.name,
            perf_counter() - started,
            len(content),
        )
        return GeneratedImage(content=content, provider=self.name)

    def _content_from_json(self, response: requests.Response, call_timeout: float) -> bytes:
        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderError("Image provider returned malformed output", kind="permanent") from exc

        encoded = body.get("b64_json") or body.get("image_base64")
        if encoded:
            return base64.b64decode(encoded)

        url = body.get("url")
        if not url:
            raise ProviderError("Image provider response has no image", kind="permanent")
        try:
            download = self.session.get(url, timeout=call_timeout)
        except requests.RequestException as exc:
            raise ProviderError(f"Image download failed: {exc}", kind="transient") from exc
        self._raise_for_status(download)
        return download.content
