import logging
from typing import Any, Dict, Optional

import stripe
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


class MedEasyError(Exception):
    status_code = 500
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        if message:
            self.message = message

    def payload(self, expose_details: bool = True) -> Dict[str, Any]:
        return {"message": self.message}


class Unauthenticated(MedEasyError):
    status_code = 401
    message = "unauthorized access"


class Forbidden(MedEasyError):
    status_code = 403
    message = "forbidden access"

    def __init__(self, message: Optional[str] = None, role: Optional[str] = None):
        super().__init__(message)
        self.role = role

    def payload(self, expose_details: bool = True) -> Dict[str, Any]:
        return {"message": self.message, "role": self.role}


class Conflict(MedEasyError):
    status_code = 409
    message = "Already exists"


class NotFound(MedEasyError):
    status_code = 404
    message = "Not found"


class ValidationFailed(MedEasyError):
    status_code = 400
    message = "Invalid request"


class Upstream(MedEasyError):
    status_code = 500
    message = "Upstream service failed"

    def __init__(self, message: Optional[str] = None, error: Optional[str] = None):
        super().__init__(message)
        self.error = error

    def payload(self, expose_details: bool = True) -> Dict[str, Any]:
        body = {"message": self.message}
        if expose_details and self.error:
            body["error"] = self.error
        return body


def register_exception_handlers(app: FastAPI) -> None:
    def _expose(request: Request) -> bool:
        settings = getattr(request.app.state, "settings", None)
        return settings.expose_upstream_errors if settings else True

    @app.exception_handler(MedEasyError)
    async def medeasy_error_handler(request: Request, exc: MedEasyError):
        return JSONResponse(status_code=exc.status_code, content=exc.payload(_expose(request)))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"message": "Invalid request", "errors": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(PyMongoError)
    async def database_error_handler(request: Request, exc: PyMongoError):
        logger.exception("Database call failed on %s %s", request.method, request.url.path)
        err = Upstream("Database operation failed", error=str(exc))
        return JSONResponse(status_code=err.status_code, content=err.payload(_expose(request)))

    @app.exception_handler(stripe.StripeError)
    async def payment_provider_error_handler(request: Request, exc: stripe.StripeError):
        logger.exception("Payment provider call failed on %s %s", request.method, request.url.path)
        err = Upstream("Payment provider request failed", error=getattr(exc, "user_message", None) or str(exc))
        return JSONResponse(status_code=err.status_code, content=err.payload(_expose(request)))
