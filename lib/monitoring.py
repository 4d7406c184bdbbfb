import contextvars
import logging
import sys
import time
import uuid
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s'

_request_id: contextvars.ContextVar = contextvars.ContextVar('request_id', default='-')


def get_request_id() -> str:
    return _request_id.get()


def set_request_id(request_id: Optional[str] = None) -> str:
    request_id = request_id or str(uuid.uuid4())
    _request_id.set(request_id)
    return request_id


class RequestIdFilter(logging.Filter):
    """Adds the current request id to every record"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        return True


def configure_logging(level: str = 'INFO') -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stdout,
        force=True  # Ensure our config takes precedence
    )
    for handler in logging.getLogger().handlers:
        handler.addFilter(RequestIdFilter())


class Timer:
    """Measures provider calls for the duration_ms log field"""

    def __enter__(self):
        self.start = time.monotonic()
        self.duration_ms = 0
        return self

    def __exit__(self, *exc):
        self.duration_ms = int((time.monotonic() - self.start) * 1000)
        return False


def init_request_context(app) -> None:
    """Read or create X-Request-ID per request and echo it on the response"""
    from flask import g, request

    @app.before_request
    def _assign_request_id():
        g.request_id = set_request_id(request.headers.get('X-Request-ID'))

    @app.after_request
    def _echo_request_id(response):
        response.headers['X-Request-ID'] = g.get('request_id', get_request_id())
        return response
