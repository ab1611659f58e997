import logging
from http import HTTPStatus

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import settings
from database.session import init_db
from routes import (
    account_routes,
    admin_routes,
    billing_routes,
    checkout_routes,
    cron_routes,
)
from services.errors import CheckoutError, InvalidStatusTransition

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Genfity Checkout API",
    description="Checkout, vouchers, payments and WhatsApp subscription activation",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(checkout_routes.router)
app.include_router(billing_routes.router)
app.include_router(cron_routes.router)
app.include_router(admin_routes.router)
app.include_router(account_routes.router)


@app.exception_handler(CheckoutError)
async def checkout_error_handler(request: Request, exc: CheckoutError):
    if isinstance(exc, InvalidStatusTransition):
        logger.warning(f"{request.method} {request.url.path}: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    logger.info(f"{request.method} {request.url.path} failed validation: {field}: {message}")
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "message": f"{field}: {message}" if field else message,
            "error": "VALIDATION_ERROR",
        },
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 500:
        code = "INTERNAL_ERROR"
    else:
        try:
            code = HTTPStatus(exc.status_code).name
        except ValueError:
            code = "HTTP_ERROR"
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": str(exc.detail), "error": code},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": "Internal server error",
            "error": "INTERNAL_ERROR",
        },
    )


@app.get("/")
async def root():
    return {
        "message": "Genfity Checkout API is running",
        "version": "1.0.0",
        "endpoints": {
            "checkout": "/api/customer/checkout",
            "payments": "/api/payments/process",
            "cron": "/api/public/cron/activate-subscriptions",
            "docs": "/docs",
        },
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


@app.on_event("startup")
async def startup_event():
    init_db()
    logger.info(f"Checkout API started successfully ({settings.ENVIRONMENT})")


if __name__ == "__main__":
    uvicorn.run("app:app", host="0.0.0.0", port=settings.PORT, reload=settings.DEBUG)
