import time
from datetime import datetime, timezone
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bustrack.src import schemas
from bustrack.src.constants import API_PREFIX, API_TITLE, API_VERSION
from bustrack.api.controller import app_v1

startedAt = time.monotonic()

app = FastAPI(title=API_TITLE, version=API_VERSION)

origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount(API_PREFIX, app_v1, "Bus Tracking API")


# Health check endpoint
@app.get("/health", tags=["Health Check"], response_model=schemas.HealthStatus)
async def health_check():
    return {
        "status": "OK",
        "version": API_VERSION,
        "uptime": round(time.monotonic() - startedAt, 3),
        "timestamp": datetime.now(timezone.utc),
    }
