import logging
import sys
import structlog
from pythonjsonlogger import jsonlogger

from ..config import get_settings


def setup_logging(json_output: bool = None):
    """Structured logging setup shared by the API and the services.

    JSON mode hands structlog's key/value pairs to python-json-logger as
    record extras, so every line is one flat JSON object. Console mode lets
    structlog render and the handler print the message as is.
    """
    if json_output is None:
        json_output = get_settings().log_json

    if json_output:
        processors = [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ]
        formatter = jsonlogger.JsonFormatter(
            fmt="%(asctime)s %(name)s %(levelname)s %(message)s"
        )
    else:
        processors = [
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer(),
        ]
        formatter = logging.Formatter("%(message)s")

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # One root handler; re-running setup swaps its formatter
    logger = logging.getLogger()
    handler = next((h for h in logger.handlers if getattr(h, "_ot_allocation", False)), None)
    if handler is None:
        handler = logging.StreamHandler(sys.stdout)
        handler._ot_allocation = True
        logger.addHandler(handler)
    handler.setFormatter(formatter)
    logger.setLevel(logging.DEBUG if get_settings().debug else logging.INFO)

    return structlog.get_logger()
