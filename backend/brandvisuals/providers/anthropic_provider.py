import logging
import time
from time import perf_counter

from anthropic import Anthropic

from brandvisuals.config import settings
from brandvisuals.providers.base import BaseContentPlanner, SlidePlan
from brandvisuals.services.job_trace import preview_text
from brandvisuals.services.prompt_templates import build_planning_prompts, extract_json_payload, parse_slide_plans


logger = logging.getLogger("brandvisuals.providers")


class AnthropicPlanner(BaseContentPlanner):
    name = "anthropic"

    def __init__(self, api_key: str):
        super().__init__()
        self.client = Anthropic(api_key=api_key, timeout=settings.external_call_timeout_seconds)

    def _messages_create_with_retry(
        self,
        *,
        request_label: str,
        system: str,
        user: str,
        max_tokens: int,
        temperature: float,
        retries: int = 1,
    ):
        last_error: Exception | None = None
        for attempt in range(retries + 1):
            started = perf_counter()
            logger.info(
                "anthropic_request_start label=%s model=%s attempt=%d/%d input_chars=%d user_preview=%s",
                request_label,
                settings.anthropic_model,
                attempt + 1,
                retries + 1,
                len(system) + len(user),
                preview_text(user, 220),
            )
            try:
                response = self.client.messages.create(
                    model=settings.anthropic_model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                text = "".join(block.text for block in response.content if hasattr(block, "text"))
                logger.info(
                    "anthropic_request_done label=%s duration_sec=%.2f output_chars=%d output_preview=%s",
                    request_label,
                    perf_counter() - started,
                    len(text),
                    preview_text(text, 220),
                )
                return text
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "anthropic_request_error label=%s attempt=%d/%d duration_sec=%.2f reason=%s",
                    request_label,
                    attempt + 1,
                    retries + 1,
                    perf_counter() - started,
                    exc,
                )
                if attempt < retries:
                    time.sleep(0.6 * (2**attempt))

        if last_error:
            raise last_error
        raise RuntimeError("Anthropic request failed with unknown error")

    def plan(self, brief: str, brand_context: dict, slide_count: int) -> list[SlidePlan]:
        self.reset_warnings()
        system, user = build_planning_prompts(brief=brief, brand_context=brand_context, slide_count=slide_count)
        text = self._messages_create_with_retry(
            request_label="plan_carousel",
            system=system,
            user=user,
            max_tokens=settings.anthropic_max_tokens,
            temperature=0.4,
        )
        payload = extract_json_payload(text)
        if payload is None:
            self.last_warnings.append("Anthropic returned invalid JSON payload.")
        plans = parse_slide_plans(payload, slide_count)
        if len(plans) < slide_count:
            self.last_warnings.append(f"Anthropic planned {len(plans)} of {slide_count} slides.")
        logger.info("anthropic_plan_parsed slides=%d requested=%d", len(plans), slide_count)
        return plans
