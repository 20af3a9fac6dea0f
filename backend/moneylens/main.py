import logging

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.datastructures import Headers
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .auth_utils import clean_password, normalize_login
from .config import Settings, configure_logging, settings
from .persistence import Persistence, StorageError, get_persistence
from .schemas import (
    ApiErrorResponse,
    HealthResponse,
    LoginRequest,
    OkResponse,
    OperationListResponse,
    OperationPayload,
    OperationResponse,
    RegisterRequest,
    RegisterResponse,
    StateResponse,
    StateUpdate,
    UserResponse,
    UserUpdate,
)

logger = logging.getLogger(__name__)

CORS_METHODS = ["GET", "POST", "PUT", "DELETE", "OPTIONS"]

router = APIRouter(prefix="/api")


def get_store(request: Request) -> Persistence:
    return request.app.state.persistence


def user_login(login: str) -> str:
    normalized = normalize_login(login)
    if normalized is None:
        raise HTTPException(status_code=400, detail="invalid login")
    return normalized


def require_operation(payload: OperationPayload | None) -> OperationPayload:
    # an empty body is validated like `{}` so it fails with the field message
    return payload if payload is not None else OperationPayload.model_validate({})


def error_response(status_code: int, message: str, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ApiErrorResponse(error=message).model_dump(), headers=headers)


def _validation_message(err: dict) -> str:
    if err.get("type") == "json_invalid":
        return "invalid JSON"
    if err.get("type") == "value_error":
        return str(err.get("msg", "")).removeprefix("Value error, ")
    loc = ".".join(str(item) for item in err.get("loc", []) if item != "body")
    msg = err.get("msg", "validation error")
    return f"{loc}: {msg}" if loc else msg


class BodySizeLimitMiddleware:
    """Rejects request bodies over `max_body_bytes`, whether or not they declare a length."""

    def __init__(self, app: ASGIApp, max_body_bytes: int) -> None:
        self.app = app
        self.max_body_bytes = max_body_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        length = Headers(scope=scope).get("content-length")
        if length and length.isdigit() and int(length) > self.max_body_bytes:
            logger.warning("Rejected %s byte body on %s", length, scope["path"])
            response = error_response(413, "payload too large", headers={"Connection": "close"})
            await response(scope, receive, send)
            return

        received = 0

        async def limited_receive() -> Message:
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_body_bytes:
                    logger.warning("Rejected streamed body over %s bytes on %s", self.max_body_bytes, scope["path"])
                    raise HTTPException(status_code=413, detail="payload too large", headers={"Connection": "close"})
            return message

        await self.app(scope, limited_receive, send)


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="ok")


@router.post("/register", response_model=RegisterResponse)
async def register(payload: RegisterRequest, persistence: Persistence = Depends(get_store)) -> RegisterResponse:
    login = normalize_login(payload.login)
    password = clean_password(payload.password)
    if not login or not password:
        raise HTTPException(status_code=400, detail="login and password are required")
    persistence.register_user(login, password, payload.name, payload.email, payload.phone)
    return RegisterResponse(login=login)


@router.post("/login", response_model=UserResponse)
async def login_user(payload: LoginRequest, persistence: Persistence = Depends(get_store)) -> UserResponse:
    login_key = normalize_login(payload.login)
    password = clean_password(payload.password)
    if not login_key or not password:
        raise HTTPException(status_code=400, detail="login and password are required")
    return UserResponse(user=persistence.authenticate_user(login_key, password))


@router.get("/users/{login}", response_model=UserResponse)
async def get_user(login: str = Depends(user_login), persistence: Persistence = Depends(get_store)) -> UserResponse:
    return UserResponse(user=persistence.get_user(login))


@router.put("/users/{login}", response_model=UserResponse)
async def update_user(
    payload: UserUpdate | None = None,
    login: str = Depends(user_login),
    persistence: Persistence = Depends(get_store),
) -> UserResponse:
    return UserResponse(user=persistence.update_user(login, payload or UserUpdate()))


@router.get("/users/{login}/state", response_model=StateResponse)
async def get_state(login: str = Depends(user_login), persistence: Persistence = Depends(get_store)) -> StateResponse:
    return StateResponse(**persistence.get_state(login))


@router.put("/users/{login}/state", response_model=OkResponse)
async def update_state(
    payload: StateUpdate | None = None,
    login: str = Depends(user_login),
    persistence: Persistence = Depends(get_store),
) -> OkResponse:
    persistence.update_state(login, payload or StateUpdate())
    return OkResponse()


@router.get("/users/{login}/operations", response_model=OperationListResponse)
async def list_operations(
    login: str = Depends(user_login),
    persistence: Persistence = Depends(get_store),
) -> OperationListResponse:
    return OperationListResponse(operations=persistence.list_operations(login))


@router.post("/users/{login}/operations", response_model=OperationResponse)
async def create_operation(
    payload: OperationPayload | None = None,
    login: str = Depends(user_login),
    persistence: Persistence = Depends(get_store),
) -> OperationResponse:
    return OperationResponse(operation=persistence.create_operation(login, require_operation(payload)))


@router.put("/users/{login}/operations/{operation_id}", response_model=OperationResponse)
async def update_operation(
    operation_id: str,
    payload: OperationPayload | None = None,
    login: str = Depends(user_login),
    persistence: Persistence = Depends(get_store),
) -> OperationResponse:
    return OperationResponse(operation=persistence.update_operation(login, operation_id, require_operation(payload)))


@router.delete("/users/{login}/operations/{operation_id}", response_model=OkResponse)
async def delete_operation(
    operation_id: str,
    login: str = Depends(user_login),
    persistence: Persistence = Depends(get_store),
) -> OkResponse:
    persistence.delete_operation(login, operation_id)
    return OkResponse()


def create_app(persistence: Persistence | None = None, config: Settings = settings) -> FastAPI:
    app = FastAPI(
        title="MoneyLens API",
        version="0.1.0",
        description="Per-user JSON storage for profiles, goals, budgets, accounts and financial operations.",
    )
    app.state.persistence = persistence or get_persistence(config)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code in (status.HTTP_404_NOT_FOUND, status.HTTP_405_METHOD_NOT_ALLOWED) and exc.detail in (
            "Not Found",
            "Method Not Allowed",
        ):
            return error_response(status.HTTP_404_NOT_FOUND, "not found")
        return error_response(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    @app.exception_handler(ValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError | ValidationError) -> JSONResponse:
        errors = exc.errors()
        message = _validation_message(errors[0]) if errors else "invalid request payload"
        logger.debug("Rejected %s %s: %s", request.method, request.url.path, message)
        return error_response(status.HTTP_400_BAD_REQUEST, message)

    @app.exception_handler(ValueError)
    async def value_error_exception_handler(request: Request, exc: ValueError) -> JSONResponse:
        return error_response(status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
        logger.exception("Storage failure on %s %s", request.method, request.url.path, exc_info=exc)
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal error")

    @app.middleware("http")
    async def catch_unexpected_errors(request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.exception("Unhandled error on %s %s", request.method, request.url.path)
            return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal error")

    app.add_middleware(BodySizeLimitMiddleware, max_body_bytes=config.max_body_bytes)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=CORS_METHODS,
        allow_headers=["Content-Type"],
    )
    app.include_router(router)
    return app


app = create_app()


def run() -> None:
    configure_logging(settings.log_level)
    logger.info("MoneyLens API listening on http://%s:%s", settings.api_host, settings.api_port)
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    run()
