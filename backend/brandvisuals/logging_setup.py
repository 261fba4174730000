import logging

from brandvisuals.config import settings


APP_LOGGERS = (
    "brandvisuals",
    "brandvisuals.jobs",
    "brandvisuals.worker",
    "brandvisuals.quota",
    "brandvisuals.providers",
    "brandvisuals.pipeline",
)


class AccessLogPathFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not settings.suppress_job_poll_access_logs:
            return True

        message = record.getMessage()
        if f'"GET {settings.api_prefix}/job-sets/' in message:
            return False
        if f'"OPTIONS {settings.api_prefix}/job-sets/' in message:
            return False
        return True


def configure_runtime_logging(*, api: bool = False) -> None:
    level = getattr(logging, str(settings.log_level).upper(), logging.INFO)
    for name in APP_LOGGERS:
        logging.getLogger(name).setLevel(level)

    if settings.suppress_httpx_info_logs:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("urllib3").setLevel(logging.WARNING)
        logging.getLogger("openai").setLevel(logging.WARNING)
        logging.getLogger("anthropic").setLevel(logging.WARNING)

    if not api:
        return
    access_logger = logging.getLogger("uvicorn.access")
    if settings.suppress_job_poll_access_logs and not any(
        isinstance(row, AccessLogPathFilter) for row in access_logger.filters
    ):
        access_logger.addFilter(AccessLogPathFilter())
