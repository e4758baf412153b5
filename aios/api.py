# aios/api.py
"""
AIOS admin HTTP surface

Thin FastAPI layer over one Runtime: enqueue, trigger a drain, control
executions, run an orchestration (one pass or to completion), read the
event history.

Run with:  uvicorn aios.api:app   (or python -m aios.api)
"""

import logging
import platform
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field, validator

from aios.config import configure_logging, get_settings
from aios.exceptions import AIOSError, InvalidStateTransition, NotFoundError
from aios.middleware import CorrelationIdMiddleware
from aios.runtime import Runtime, build_runtime

logger = logging.getLogger("aios.api")


# =============================================================================
# Pydantic Models
# =============================================================================

class QueueAdd(BaseModel):
    """Queue entry creation"""
    task_id: str = Field(..., min_length=1, description="Task to run")
    agent_id: str = Field(..., min_length=1, description="Agent that runs it")
    priority: int = Field(default=0, ge=0, le=100, description="Higher runs first")
    scheduled_for: Optional[datetime] = Field(default=None, description="Not before (UTC)")
    max_attempts: Optional[int] = Field(default=None, ge=1, le=10)

    @validator("scheduled_for")
    def naive_utc(cls, v):
        # Stored timestamps are naive UTC
        if v is not None and v.tzinfo is not None:
            return v.astimezone(timezone.utc).replace(tzinfo=None)
        return v

    class Config:
        extra = "forbid"


class ExecuteRequest(BaseModel):
    task_id: str = Field(..., min_length=1)

    class Config:
        extra = "forbid"


class FeedbackCreate(BaseModel):
    rating: int = Field(..., description="1-5, clamped")
    was_accepted: bool
    comments: Optional[str] = Field(default=None, max_length=4000)
    improvements: List[str] = Field(default_factory=list)

    class Config:
        extra = "forbid"


def _http_error(e: AIOSError) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, InvalidStateTransition):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


def _execution_dict(execution) -> Dict[str, Any]:
    return {
        "execution_id": execution.id,
        "task_id": execution.task_id,
        "agent_id": execution.agent_id,
        "status": execution.status,
        "progress": execution.progress,
        "error": execution.error,
        "started_at": execution.started_at.isoformat() if execution.started_at else None,
        "completed_at": execution.completed_at.isoformat() if execution.completed_at else None,
    }


# =============================================================================
# App factory
# =============================================================================

def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    app = FastAPI(
        title="AIOS Orchestrator",
        description="Agent task queue, execution engine and phase gates",
        version="0.1.0",
    )
    app.add_middleware(CorrelationIdMiddleware)
    app.state.runtime = runtime

    def rt(request: Request) -> Runtime:
        if request.app.state.runtime is None:
            raise HTTPException(status_code=503, detail="Runtime not initialized")
        return request.app.state.runtime

    @app.on_event("startup")
    async def startup():
        if app.state.runtime is None:
            configure_logging()
            app.state.runtime = build_runtime(get_settings())
        runtime_ = app.state.runtime
        if runtime_.settings.AUTO_PROCESS_ENABLED:
            runtime_.processor.start()
        logger.info("AIOS API started")

    @app.on_event("shutdown")
    async def shutdown():
        if app.state.runtime is not None:
            await app.state.runtime.close()
        logger.info("AIOS API stopped")

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    @app.get("/health")
    async def health_check(request: Request):
        runtime_ = rt(request)
        return {
            "status": "healthy",
            "platform": platform.system(),
            "timestamp": datetime.utcnow().isoformat(),
            "queue": runtime_.queue.status(),
            "processor": runtime_.processor.get_status(),
            "background": runtime_.supervisor.get_status(),
            "active_executions": len(runtime_.engine.active_executions()),
            "orchestration_loops": runtime_.engine.active_loops(),
        }

    # -------------------------------------------------------------------------
    # Queue
    # -------------------------------------------------------------------------

    @app.get("/queue")
    async def queue_status(request: Request):
        return rt(request).queue.status()

    @app.post("/queue", status_code=201)
    async def enqueue(body: QueueAdd, request: Request):
        runtime_ = rt(request)
        try:
            runtime_.store.require_task(body.task_id)
            runtime_.store.require_agent(body.agent_id)
        except AIOSError as e:
            raise _http_error(e)

        entry = runtime_.queue.enqueue(
            body.task_id,
            body.agent_id,
            priority=body.priority,
            scheduled_for=body.scheduled_for,
            max_attempts=body.max_attempts,
        )
        return {
            "queue_id": entry.id,
            "task_id": entry.task_id,
            "agent_id": entry.agent_id,
            "priority": entry.priority,
            "status": entry.status,
            "max_attempts": entry.max_attempts,
            "scheduled_for": entry.scheduled_for.isoformat() if entry.scheduled_for else None,
        }

    @app.delete("/queue/{task_id}")
    async def remove_from_queue(task_id: str, request: Request):
        return {"task_id": task_id, "removed": rt(request).queue.remove_from_queue(task_id)}

    @app.post("/processor/tick")
    async def processor_tick(request: Request):
        runtime_ = rt(request)
        handled = await runtime_.tick()
        return {"handled": handled, "processor": runtime_.processor.get_status()}

    # -------------------------------------------------------------------------
    # Executions
    # -------------------------------------------------------------------------

    @app.post("/agents/{agent_id}/execute")
    async def execute_task(agent_id: str, body: ExecuteRequest, request: Request):
        try:
            result = await rt(request).engine.execute_task(body.task_id, agent_id)
        except AIOSError as e:
            raise _http_error(e)
        return result.to_dict()

    @app.post("/executions/{execution_id}/pause")
    async def pause_execution(execution_id: str, request: Request):
        try:
            return _execution_dict(rt(request).engine.pause_execution(execution_id))
        except AIOSError as e:
            raise _http_error(e)

    @app.post("/executions/{execution_id}/resume")
    async def resume_execution(execution_id: str, request: Request):
        try:
            result = await rt(request).engine.resume_execution(execution_id)
        except AIOSError as e:
            raise _http_error(e)
        return result.to_dict()

    @app.post("/executions/{execution_id}/cancel")
    async def cancel_execution(execution_id: str, request: Request):
        try:
            return _execution_dict(rt(request).engine.cancel_execution(execution_id))
        except AIOSError as e:
            raise _http_error(e)

    @app.post("/executions/{execution_id}/feedback", status_code=201)
    async def record_feedback(execution_id: str, body: FeedbackCreate, request: Request):
        try:
            feedback = rt(request).learning.record_feedback(
                execution_id,
                rating=body.rating,
                was_accepted=body.was_accepted,
                comments=body.comments,
                improvements=body.improvements,
            )
        except AIOSError as e:
            raise _http_error(e)
        return {"execution_id": execution_id, "rating": feedback.rating, "was_accepted": feedback.was_accepted}

    @app.get("/agents/{agent_id}/performance")
    async def agent_performance(agent_id: str, request: Request):
        try:
            return rt(request).learning.get_agent_performance(agent_id)
        except AIOSError as e:
            raise _http_error(e)

    # -------------------------------------------------------------------------
    # Orchestrations
    # -------------------------------------------------------------------------

    @app.post("/orchestrations/{orchestration_id}/execute")
    async def execute_orchestration(orchestration_id: str, request: Request, concurrency: Optional[int] = None):
        if concurrency is not None and concurrency < 1:
            raise HTTPException(status_code=422, detail="concurrency must be >= 1")
        try:
            return await rt(request).engine.execute_orchestration(orchestration_id, concurrency_limit=concurrency)
        except AIOSError as e:
            raise _http_error(e)

    @app.post("/orchestrations/{orchestration_id}/run")
    async def run_orchestration(
        orchestration_id: str,
        request: Request,
        concurrency: Optional[int] = None,
        retry_attempts: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        if concurrency is not None and concurrency < 1:
            raise HTTPException(status_code=422, detail="concurrency must be >= 1")
        if retry_attempts is not None and not 0 <= retry_attempts <= 10:
            raise HTTPException(status_code=422, detail="retry_attempts must be between 0 and 10")
        if timeout is not None and timeout <= 0:
            raise HTTPException(status_code=422, detail="timeout must be > 0")
        try:
            stats = await rt(request).engine.run_orchestration_loop(
                orchestration_id,
                concurrency_limit=concurrency,
                retry_attempts=retry_attempts,
                execution_timeout=timeout,
            )
        except AIOSError as e:
            raise _http_error(e)
        if stats.already_running:
            raise HTTPException(status_code=409, detail=f"Orchestration loop already running for {orchestration_id}")
        return stats.to_dict()

    @app.get("/orchestrations/{orchestration_id}/graph")
    async def orchestration_graph(orchestration_id: str, request: Request):
        runtime_ = rt(request)
        try:
            runtime_.store.require_orchestration(orchestration_id)
        except AIOSError as e:
            raise _http_error(e)
        return runtime_.resolver.graph_for_orchestration(orchestration_id).to_dict()

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    @app.get("/events")
    async def get_events(request: Request, limit: int = 100):
        return [payload.to_dict() for payload in rt(request).bus.get_history(limit)]

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(app, host=settings.API_HOST, port=settings.API_PORT)
