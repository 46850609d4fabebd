from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError

from app.api.routes import agent, tasks
from app.core.exceptions import global_exception_handler, http_exception_handler, intake_rejected_exception_handler, request_validation_exception_handler
from app.core.lifespan import lifespan
from app.core.middleware import RequestLoggingMiddleware
from app.jobs.errors import IntakeRejectedError

app = FastAPI(title="Fan-out Orchestrator", lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)

# Add exception handlers
app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(IntakeRejectedError, intake_rejected_exception_handler)
app.add_exception_handler(RequestValidationError, request_validation_exception_handler)

# Add middleware
app.add_middleware(RequestLoggingMiddleware)

app.include_router(agent.router, tags=["agent"])
app.include_router(tasks.router, prefix="/internal", tags=["tasks"])
