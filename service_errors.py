"""
Error taxonomy shared by the services and the FastAPI handlers that render it.

Every error reaches the client as ``{"error": <message>, "code": <name>}``;
stack traces and internal identifiers stay in the logs.
"""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from service_logging import log_exception, log_json


class ServiceError(Exception):
    status_code = 500
    code = 'InternalError'

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(ServiceError):
    status_code = 400
    code = 'ValidationError'


class Unauthenticated(ServiceError):
    status_code = 401
    code = 'Unauthenticated'


class Forbidden(ServiceError):
    status_code = 403
    code = 'Forbidden'


class NotFound(ServiceError):
    status_code = 404
    code = 'NotFound'


class UpstreamUnavailable(ServiceError):
    status_code = 502
    code = 'UpstreamUnavailable'


class StateConflict(ServiceError):
    status_code = 400
    code = 'StateConflict'


class PaymentInvalid(ValidationError):
    code = 'PaymentInvalid'


class EmptyCart(ValidationError):
    code = 'EmptyCart'


class PriceMismatch(StateConflict):
    code = 'PriceMismatch'


class AmountMismatch(StateConflict):
    code = 'AmountMismatch'


class InsufficientStock(StateConflict):
    code = 'InsufficientStock'


class PaymentDeclined(StateConflict):
    code = 'PaymentDeclined'


def error_body(message: str, code: str) -> dict:
    return {'error': message, 'code': code}


def register_error_handlers(app: FastAPI):
    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_json('WARN' if exc.status_code < 500 else 'ERROR', exc.message,
                 error_code=exc.code, http_status=exc.status_code,
                 path=request.url.path, **exc.context)
        return JSONResponse(status_code=exc.status_code,
                            content=error_body(exc.message, exc.code))

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = '.'.join(str(part) for part in first.get('loc', ()) if part != 'body')
        message = f"Invalid {location}: {first.get('msg', 'invalid value')}" if location else 'Invalid request'
        log_json('WARN', 'Request validation failed',
                 error_code=ValidationError.code, path=request.url.path, error_count=len(errors))
        return JSONResponse(status_code=400, content=error_body(message, ValidationError.code))

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        code = NotFound.code if exc.status_code == 404 else 'HTTPError'
        return JSONResponse(status_code=exc.status_code, content=error_body(str(exc.detail), code))

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        log_exception('ERROR', 'Unhandled error while serving request', exc=exc,
                      path=request.url.path, severity='critical')
        return JSONResponse(status_code=500, content=error_body('Internal server error', 'InternalError'))
