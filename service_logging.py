"""
Structured JSON logging.

One JSON document per line on stdout, shaped so the log shipper can index
service, kubernetes and trace metadata without a parser.
"""

import json
import os
import socket
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime, timezone

from service_config import ENVIRONMENT, SERVICE_VERSION


# Set per request by ServiceNameMiddleware; records outside a request fall back to SERVICE_NAME
current_service: ContextVar = ContextVar('current_service', default=None)


def _service_name() -> str:
    return current_service.get() or os.getenv('SERVICE_NAME', 'commerce-service')


def _base_entry(level: str, message: str) -> dict:
    return {
        '@timestamp': datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%fZ'),
        'message': message,
        'log': {'level': level},
        'service': {
            'name': _service_name(),
            'version': SERVICE_VERSION,
            'environment': ENVIRONMENT,
        },
        'kubernetes': {
            'namespace': os.getenv('POD_NAMESPACE', 'production'),
            'pod': {'name': os.getenv('POD_NAME', socket.gethostname())},
        },
    }


def _emit(log_entry: dict, context: dict):
    if 'trace_id' in context:
        log_entry['trace'] = {'id': context['trace_id']}
        if 'span_id' in context:
            log_entry['trace']['span_id'] = context['span_id']

    for key, value in context.items():
        if key not in ['trace_id', 'span_id']:
            log_entry[key] = value

    print(json.dumps(log_entry, default=str), file=sys.stdout, flush=True)


def log_json(level: str, message: str, **context):
    _emit(_base_entry(level, message), context)


def log_exception(level: str, message: str, exc: Exception = None, **context):
    """Log with the exception type, message and full stack trace attached."""
    log_entry = _base_entry(level, message)

    if exc is not None:
        tb_str = None
        if exc.__traceback__ is not None:
            tb_str = ''.join(traceback.format_exception(type(exc), exc, exc.__traceback__))

        # Exceptions constructed but never raised carry no traceback
        if not tb_str:
            exc_info = sys.exc_info()
            if exc_info[0] is not None:
                tb_str = ''.join(traceback.format_exception(*exc_info))

        if not tb_str:
            tb_str = f"{type(exc).__name__}: {exc}\n(No traceback available)"

        log_entry['exception'] = {
            'type': type(exc).__name__,
            'message': str(exc),
            'stacktrace': tb_str,
        }

        if level == 'ERROR':
            print(f"\n{'='*80}", file=sys.stderr, flush=True)
            print(f"ERROR: {message}", file=sys.stderr, flush=True)
            print(f"Service: {_service_name()} | Environment: {ENVIRONMENT}", file=sys.stderr, flush=True)
            if 'trace_id' in context:
                print(f"Trace: {context['trace_id']}", file=sys.stderr, flush=True)
            print(f"{'='*80}", file=sys.stderr, flush=True)
            print(tb_str, file=sys.stderr, flush=True)
            print(f"{'='*80}\n", file=sys.stderr, flush=True)

    _emit(log_entry, context)


class ServiceNameMiddleware:
    """ASGI middleware naming the service on every record logged while a request is served."""

    def __init__(self, app, service_name: str):
        self.app = app
        self.service_name = service_name

    async def __call__(self, scope, receive, send):
        token = current_service.set(self.service_name)
        try:
            await self.app(scope, receive, send)
        finally:
            current_service.reset(token)
