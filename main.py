"""
Recete API - Main Entry Point
WhatsApp support agent with product-knowledge RAG and order lifecycle messaging
"""
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from starlette.middleware.base import BaseHTTPMiddleware

from recete import __version__
from recete.api import webhooks
from recete.config import settings
from recete.services.container import create_services

# Initialize logger
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class ProxyHeadersMiddleware(BaseHTTPMiddleware):
    """
    Trust X-Forwarded-Proto from the reverse proxy.
    Fixes redirect scheme when TLS terminates at the proxy.
    """
    async def dispatch(self, request: Request, call_next):
        forwarded_proto = request.headers.get("X-Forwarded-Proto")
        if forwarded_proto:
            request.scope["scheme"] = forwarded_proto
        return await call_next(request)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan (startup/shutdown)"""
    logger.info("Starting Recete API...")

    # Tests install their own container before startup
    owns_services = getattr(app.state, "services", None) is None
    if owns_services:
        app.state.services = create_services()

    logger.info("Application startup complete")
    yield

    if owns_services:
        await app.state.services.close()
        app.state.services = None
    logger.info("Application shutdown")


app = FastAPI(
    title="Recete API",
    description="""
## Recete WhatsApp Support Agent

- **Webhooks**: WhatsApp Cloud API messages and Shopify order events
- **Events**: CSV order import and ingestion queue draining
- **Knowledge**: product re-indexing and semantic search
""",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

app.add_middleware(ProxyHeadersMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(webhooks.router)  # Webhooks (/webhooks/*), events (/events/*), knowledge (/knowledge/*)


def custom_openapi():
    """OpenAPI schema with the X-API-Key security scheme"""
    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )
    openapi_schema.setdefault("components", {})["securitySchemes"] = {
        "ApiKeyAuth": {
            "type": "apiKey",
            "in": "header",
            "name": "X-API-Key",
            "description": "Shared secret for event and knowledge endpoints."
        }
    }
    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi


@app.get(
    "/",
    tags=["health"],
    summary="API Health Check",
    response_description="System health status"
)
def root():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "message": "Recete API",
        "version": __version__,
        "docs": {
            "swagger_ui": "/docs",
            "redoc": "/redoc",
            "openapi_json": "/openapi.json"
        }
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
