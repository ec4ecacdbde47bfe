"""Main FastAPI application entry point."""
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from keytrack.config import get_settings
from keytrack.database import engine, Base
from keytrack.logger import configure_logging
from keytrack.metrics import get_metrics_response
from keytrack.api.routes import router
# Import models to register them with SQLAlchemy Base
from keytrack.models.domain import User, Admin, Key, IssueRecord  # noqa: F401

configure_logging(get_settings().log_level)

# Create database tables
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Keytrack - Key Issuance Tracker",
    description="Issues and returns physical keys and escalates keys that are not brought back.",
    version="0.1.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api", tags=["Keytrack"])


@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "Keytrack"}


@app.get("/metrics")
def metrics():
    body, content_type = get_metrics_response()
    return Response(content=body, media_type=content_type)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
