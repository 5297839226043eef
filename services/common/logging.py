import logging

from opentelemetry import trace

from .config import ServiceSettings


_TRACE_PLACEHOLDER = "-"
_LOG_FORMAT = (
    "%(asctime)s | %(levelname)s | %(service)s | %(name)s"
    " | trace_id=%(trace_id)s span_id=%(span_id)s | %(message)s"
)


def _format_trace_id(value: int, length: int) -> str:
    return format(value, f"0{length}x")


class LogContextFilter(logging.Filter):
    """Stamp records with the service name and the active trace/span ids."""

    def __init__(self, service: str) -> None:
        super().__init__()
        self.service = service

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "service"):
            record.service = self.service

        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            record.trace_id = _format_trace_id(span_context.trace_id, 32)
            record.span_id = _format_trace_id(span_context.span_id, 16)
        else:
            record.trace_id = _TRACE_PLACEHOLDER
            record.span_id = _TRACE_PLACEHOLDER
        return True


def configure_logging(settings: ServiceSettings) -> None:
    """Configure root logging level and format, once per process."""

    logging.basicConfig(level=settings.log_level, format=_LOG_FORMAT)
    root_logger = logging.getLogger()
    root_logger.setLevel(settings.log_level)

    context_filter = next(
        (f for f in root_logger.filters if isinstance(f, LogContextFilter)),
        None,
    )
    if context_filter is None:
        context_filter = LogContextFilter(settings.app_name)
        root_logger.addFilter(context_filter)
    else:
        context_filter.service = settings.app_name

    for handler in root_logger.handlers:
        if not any(isinstance(f, LogContextFilter) for f in handler.filters):
            handler.addFilter(context_filter)
