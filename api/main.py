"""
FastAPI server for Sketch2Agent.

Provides REST API endpoints for:
- Workflow submission and build status
- Execution, synchronous or streamed as Server-Sent Events

Usage:
    uvicorn api.main:app --host 0.0.0.0 --port 8000 --reload
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.router import router
from api.workflows.services import ProblemException
from shared.database import db_lifespan
from shared.logger import get_logger
from workflow_compiler.build.store import BuildStore
from workflow_compiler.services import create_build_coordinator, create_execution_engine, create_store
from workflow_compiler.synthesis.service import GenerationService

logger = get_logger("api.main")


def _attach_services(app: FastAPI, store: BuildStore, generation_service: Optional[GenerationService]) -> None:
    app.state.build_store = store
    app.state.coordinator = create_build_coordinator(store, generation_service=generation_service)
    app.state.engine = create_execution_engine(store)


def create_app(
    *,
    store: Optional[BuildStore] = None,
    generation_service: Optional[GenerationService] = None,
) -> FastAPI:
    """
    Build the application. With an injected store (tests, single-process dev)
    no database is initialized.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("🚀 Starting Sketch2Agent API server...")
        if store is not None:
            _attach_services(app, store, generation_service)
            yield
        else:
            async with db_lifespan(app):
                logger.info("✅ Database initialized")
                _attach_services(app, create_store(), generation_service)
                yield
        logger.info("👋 Sketch2Agent API server shutting down...")

    app = FastAPI(
        title="Sketch2Agent API",
        description="Compile diagram workflows into runnable agents and execute them",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.include_router(router)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["*"],
    )

    @app.exception_handler(ProblemException)
    async def problem_exception_handler(request: Request, exc: ProblemException):
        """Render workflow errors as flat problem details with a string `detail`."""
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.problem.model_dump(),
            media_type="application/problem+json",
        )

    # Exception handler to ensure CORS headers on errors
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler that ensures CORS headers are included."""
        error_logger = get_logger("api.main.errors")
        error_logger.error(f"Unhandled exception: {exc}", exc_info=True)

        response = JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )
        origin = request.headers.get("origin")
        response.headers["Access-Control-Allow-Origin"] = origin or "*"
        if origin:
            response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Access-Control-Allow-Methods"] = "*"
        response.headers["Access-Control-Allow-Headers"] = "*"
        return response

    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "ok",
            "server": "Sketch2Agent API",
            "version": "1.0.0",
        }

    return app


app = create_app()


# =============================================================================
# Entry point for running directly
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
