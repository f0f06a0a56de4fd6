from logging import getLogger
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from bustrack.api import admin, auth, bus, location, operator, route
from bustrack.src.constants import API_TITLE, API_VERSION


# ------------------------------------------------------
# Versioned API app
# ------------------------------------------------------
app_v1 = FastAPI(title=API_TITLE, version=API_VERSION)

app_v1.include_router(auth.route_v1)
app_v1.include_router(bus.route_v1)
app_v1.include_router(route.route_v1)
app_v1.include_router(location.route_v1)
app_v1.include_router(operator.route_v1)
app_v1.include_router(admin.route_v1)


# ------------------------------------------------------
# Error envelopes
# ------------------------------------------------------
@app_v1.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    content = {"success": False, "message": exc.detail}
    errors = getattr(exc, "errors", None)
    if errors is not None:
        content["errors"] = errors
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(content),
        headers=exc.headers,
    )


@app_v1.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {
            "field": ".".join(str(x) for x in error["loc"][1:]) or error["loc"][0],
            "message": error["msg"],
        }
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "message": "Validation failed", "errors": errors},
        headers={"X-Error": "RequestValidationError"},
    )


@app_v1.middleware("http")
async def internal_error_envelope(request: Request, call_next):
    # Tracebacks are logged by `exceptions.handle`
    try:
        return await call_next(request)
    except Exception as e:
        getLogger("uvicorn.error").error(
            f"{request.method} {request.url.path} failed with {type(e).__name__}"
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "message": "Internal server error"},
        )
