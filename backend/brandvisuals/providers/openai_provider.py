import json
import logging
from time import perf_counter
from typing import Any

from openai import OpenAI

from brandvisuals.config import settings
from brandvisuals.providers.base import BaseContentPlanner, SlidePlan
from brandvisuals.services.job_trace import preview_text
from brandvisuals.services.prompt_templates import build_planning_prompts, parse_slide_plans, plan_output_schema


logger = logging.getLogger("brandvisuals.providers")


class OpenAIPlanner(BaseContentPlanner):
    name = "openai"

    def __init__(self, api_key: str):
        super().__init__()
        self.client = OpenAI(api_key=api_key, timeout=settings.external_call_timeout_seconds)

    def _run_structured_request(
        self,
        *,
        system: str,
        user: str,
        output_schema: dict[str, Any],
        request_label: str = "structured",
        retries: int = 1,
    ) -> dict[str, Any]:
        last_error: Exception | None = None

        for attempt in range(retries + 1):
            started = perf_counter()
            logger.info(
                "openai_request_start label=%s model=%s attempt=%d/%d input_chars=%d user_preview=%s",
                request_label,
                settings.openai_model,
                attempt + 1,
                retries + 1,
                len(system) + len(user),
                preview_text(user, 220),
            )
            try:
                response = self.client.responses.create(
                    model=settings.openai_model,
                    input=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                    text={
                        "format": {
                            "type": "json_schema",
                            "name": "carousel_plan",
                            "schema": output_schema,
                            "strict": True,
                        }
                    },
                )
                text = (response.output_text or "").strip()
                if not text:
                    raise ValueError("OpenAI returned empty structured output")
                logger.info(
                    "openai_request_done label=%s duration_sec=%.2f output_chars=%d output_preview=%s",
                    request_label,
                    perf_counter() - started,
                    len(text),
                    preview_text(text, 220),
                )
                return json.loads(text)
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "openai_request_error label=%s attempt=%d/%d duration_sec=%.2f reason=%s",
                    request_label,
                    attempt + 1,
                    retries + 1,
                    perf_counter() - started,
                    exc,
                )

        if last_error:
            raise last_error
        raise RuntimeError("OpenAI structured request failed with unknown error")

    def plan(self, brief: str, brand_context: dict, slide_count: int) -> list[SlidePlan]:
        self.reset_warnings()
        system, user = build_planning_prompts(brief=brief, brand_context=brand_context, slide_count=slide_count)
        payload = self._run_structured_request(
            system=system,
            user=user,
            output_schema=plan_output_schema(),
            request_label="plan_carousel",
        )
        plans = parse_slide_plans(payload, slide_count)
        if len(plans) < slide_count:
            self.last_warnings.append(f"OpenAI planned {len(plans)} of {slide_count} slides.")
        logger.info("openai_plan_parsed slides=%d requested=%d", len(plans), slide_count)
        return plans
