import asyncio
import json
import logging
from http import HTTPStatus
from typing import Callable, Type

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from starlette.datastructures import Headers
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Starlette's own 404/405 details are the HTTP reason phrases
_DEFAULT_CODES = {
    404: "not_found",
    405: "method_not_allowed",
}


def configure_logging(level: str = "info"):
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def error_response(status_code: int, code: str, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"ok": False, "error": code},
        headers=headers
    )


def validation_error_code(error: dict) -> str:
    """Short machine readable code for one pydantic error"""
    kind = error.get("type")
    if kind == "value_error" and "error" in error.get("ctx", {}):
        return str(error["ctx"]["error"])
    if kind == "json_invalid":
        return "invalid_json"

    loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query")]
    field = loc[0] if loc else "body"
    if kind == "missing":
        return f"{field}_required"
    return f"invalid_{field}"


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    code = exc.detail
    if exc.status_code in _DEFAULT_CODES and code == HTTPStatus(exc.status_code).phrase:
        code = _DEFAULT_CODES[exc.status_code]
    return error_response(exc.status_code, str(code), getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    code = validation_error_code(errors[0]) if errors else "invalid_request"
    logger.debug(f"Rejected {request.method} {request.url.path}: {code}")
    return error_response(400, code)


class PayloadTooLarge(StarletteHTTPException):
    def __init__(self):
        super().__init__(status_code=400, detail="payload_too_large")


class BodySizeLimitMiddleware:
    """Caps request bodies by Content-Length and by bytes actually received"""

    def __init__(self, app: ASGIApp, max_body_bytes: int):
        self.app = app
        self.max_body_bytes = max_body_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        content_length = Headers(scope=scope).get("content-length")
        if content_length:
            try:
                too_large = int(content_length) > self.max_body_bytes
            except ValueError:
                await error_response(400, "invalid_content_length")(scope, receive, send)
                return
            if too_large:
                await error_response(400, "payload_too_large")(scope, receive, send)
                return

        # Chunked uploads carry no length
        received = 0
        response_started = False

        async def limited_receive() -> Message:
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_body_bytes:
                    raise PayloadTooLarge()
            return message

        async def tracked_send(message: Message):
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, limited_receive, tracked_send)
        except PayloadTooLarge:
            if response_started:
                raise
            await error_response(400, "payload_too_large")(scope, receive, send)


def json_body(model: Type[BaseModel]):
    """
    Dependency that parses the request body into model

    An empty body validates as {}, so missing fields get their own codes.
    """
    async def parse(request: Request):
        raw = await request.body()
        try:
            data = json.loads(raw) if raw.strip() else {}
        except ValueError:
            raise StarletteHTTPException(status_code=400, detail="invalid_json")
        try:
            return model.model_validate(data)
        except ValidationError as e:
            errors = e.errors()
            code = validation_error_code(errors[0]) if errors else "invalid_request"
            logger.debug(f"Rejected {request.method} {request.url.path}: {code}")
            raise StarletteHTTPException(status_code=400, detail=code)

    return parse


def install_api_support(app: FastAPI, allowed_origins: list, max_body_bytes: int):
    """JSON error envelope, the per-request guard, the body cap and CORS"""
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    @app.middleware("http")
    async def request_guard(request: Request, call_next):
        """Answer bare OPTIONS and keep handler crashes inside one request"""
        if request.method == "OPTIONS":
            # CORS preflights are answered by the outer middleware
            return Response(status_code=204)

        try:
            return await call_next(request)
        except Exception as e:
            logger.exception(f"Unhandled error in {request.method} {request.url.path}")
            return error_response(400, str(e) or e.__class__.__name__)

    app.add_middleware(BodySizeLimitMiddleware, max_body_bytes=max_body_bytes)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )


async def periodic_sweep(name: str, sweep: Callable[[], int], interval: float):
    """Periodically drop expired entries"""
    while True:
        try:
            await asyncio.sleep(interval)
            removed = sweep()
            if removed > 0:
                logger.info(f"Swept {removed} expired {name}")
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error(f"Error in {name} sweep: {e}")


async def stop_task(task: asyncio.Task):
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
