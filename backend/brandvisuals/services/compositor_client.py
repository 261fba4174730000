import io
import logging
from time import perf_counter

import requests
from PIL import Image, ImageDraw, ImageFont

from brandvisuals.config import settings
from brandvisuals.errors import CompositingError
from brandvisuals.services.colors import hex_to_rgb
from brandvisuals.services.text_layer import TextLayer


logger = logging.getLogger("brandvisuals.pipeline")

# Cleanup still gets a short window after the compose budget is spent.
CLEANUP_MIN_TIMEOUT_SECONDS = 1.0


def _png_bytes(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


class LocalCompositor:
    """In-process compositing with Pillow, used when no compositing service is configured."""

    name = "local"

    def compose(
        self,
        background: bytes,
        layer: TextLayer,
        *,
        tint_color: str | None = None,
        tint_strength: int = 0,
        timeout: float | None = None,
    ) -> bytes:
        try:
            with Image.open(io.BytesIO(background)) as source:
                canvas = source.convert("RGB").resize((layer.width, layer.height))
        except (OSError, ValueError) as exc:
            raise CompositingError(f"Unreadable background image: {exc}") from exc

        if tint_color and tint_strength > 0:
            overlay = Image.new("RGB", canvas.size, hex_to_rgb(tint_color))
            canvas = Image.blend(canvas, overlay, max(0.0, min(1.0, tint_strength / 100.0)))

        draw = ImageDraw.Draw(canvas)
        fill = hex_to_rgb(layer.color)
        outline = hex_to_rgb(layer.outline_color)
        for element in layer.elements:
            font = ImageFont.load_default(size=element.size)
            x = element.x
            if element.align == "center":
                x -= int(draw.textlength(element.text, font=font) / 2)
            draw.text(
                (x, element.y),
                element.text,
                font=font,
                fill=fill,
                stroke_width=2,
                stroke_fill=outline,
            )
        return _png_bytes(canvas)

    def delete(self, resource_id: str, *, timeout: float | None = None) -> None:
        return None


class CompositorClient:
    """Remote compositing/CDN service: upload background, compose overlay and tint, fetch result."""

    name = "remote"

    def __init__(self, base_url: str, api_key: str | None = None, session: requests.Session | None = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.session = session or requests.Session()

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    def _timeout(self, timeout: float | None) -> float:
        return float(timeout or settings.external_call_timeout_seconds)

    def upload(self, content: bytes, *, timeout: float | None = None) -> str:
        try:
            response = self.session.post(
                f"{self.base_url}/uploads",
                files={"file": ("background.png", content, "image/png")},
                headers=self._headers(),
                timeout=self._timeout(timeout),
            )
            response.raise_for_status()
            resource_id = response.json().get("id")
        except (requests.RequestException, ValueError) as exc:
            raise CompositingError(f"Background upload failed: {exc}") from exc
        if not resource_id:
            raise CompositingError("Compositor upload returned no resource id")
        return str(resource_id)

    def compose(
        self,
        background: bytes,
        layer: TextLayer,
        *,
        tint_color: str | None = None,
        tint_strength: int = 0,
        timeout: float | None = None,
    ) -> bytes:
        started = perf_counter()
        ends = started + self._timeout(timeout)

        def remaining() -> float:
            left = ends - perf_counter()
            if left <= 0:
                raise CompositingError("Compositing ran out of time")
            return left

        resource_id = self.upload(background, timeout=remaining())
        try:
            payload = {
                "background_id": resource_id,
                "overlay_svg": layer.to_svg(),
                "width": layer.width,
                "height": layer.height,
                "tint": {"color": tint_color, "strength": tint_strength} if tint_color else None,
            }
            try:
                response = self.session.post(
                    f"{self.base_url}/compose",
                    json=payload,
                    headers=self._headers(),
                    timeout=remaining(),
                )
                response.raise_for_status()
                url = response.json().get("url")
                if not url:
                    raise CompositingError("Compositor returned no output url")
                download = self.session.get(url, timeout=remaining())
                download.raise_for_status()
            except (requests.RequestException, ValueError) as exc:
                raise CompositingError(f"Compose request failed: {exc}") from exc
            logger.info(
                "compositor_compose_done resource=%s duration_sec=%.2f bytes=%d",
                resource_id,
                perf_counter() - started,
                len(download.content),
            )
            return download.content
        finally:
            self.delete(resource_id, timeout=max(ends - perf_counter(), CLEANUP_MIN_TIMEOUT_SECONDS))

    def delete(self, resource_id: str, *, timeout: float | None = None) -> None:
        try:
            response = self.session.delete(
                f"{self.base_url}/resources/{resource_id}",
                headers=self._headers(),
                timeout=self._timeout(timeout),
            )
            response.raise_for_status()
        except requests.RequestException:
            logger.warning("compositor_cleanup_failed resource=%s", resource_id, exc_info=True)
