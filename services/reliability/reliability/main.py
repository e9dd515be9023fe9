from __future__ import annotations

from typing import Any, Optional, Union

from fastapi import FastAPI, HTTPException, Response
from pydantic import BaseModel, Field

from .exceptions import register_exception_handlers
from .models import JobState, Priority
from .runtime import Runtime

# -----------------------
# API models
# -----------------------


class SubmitJobReq(BaseModel):
    job_type: str
    payload: Any = Field(default_factory=dict)
    priority: Union[int, str] = Field(default="NORMAL", description="LOW | NORMAL | HIGH | CRITICAL or 0-3")
    max_retries: int = Field(default=3, ge=0, le=100)
    run_at: Optional[float] = Field(default=None, description="epoch seconds; default now")


# -----------------------
# App
# -----------------------


def create_app(runtime: Optional[Runtime] = None, manage_lifecycle: bool = True) -> FastAPI:
    """Status and enqueue API over a Runtime.

    With manage_lifecycle the runtime is started and stopped with the app.
    """
    rt = runtime or Runtime()
    app = FastAPI(title="Reliability Core - Jobs & Circuit Breakers")
    app.state.runtime = rt
    register_exception_handlers(app)

    if manage_lifecycle:

        @app.on_event("startup")
        async def startup() -> None:
            await rt.start()

        @app.on_event("shutdown")
        async def shutdown() -> None:
            await rt.stop()

    # -----------------------
    # Routes
    # -----------------------

    @app.get("/healthz")
    def healthz():
        return {"ok": True, "breakers": rt.breakers.health()["status"]}

    @app.get("/metrics")
    async def metrics() -> Response:
        await rt.refresh_metrics()
        return Response(rt.metrics.render(), media_type=rt.metrics.content_type)

    @app.get("/status")
    async def status():
        return await rt.status()

    @app.post("/jobs", status_code=202)
    async def submit_job(req: SubmitJobReq):
        try:
            priority = Priority.parse(req.priority)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        job_id = await rt.queue.enqueue(
            req.job_type,
            req.payload,
            priority=priority,
            max_retries=req.max_retries,
            run_at=req.run_at,
        )
        return {"job_id": job_id, "state": JobState.PENDING.value}

    @app.get("/jobs")
    async def list_jobs(state: Optional[JobState] = None, job_type: Optional[str] = None):
        jobs = await rt.queue.list_jobs(state=state, job_type=job_type)
        return {"jobs": [j.to_dict() for j in jobs]}

    @app.get("/jobs/{job_id}")
    async def get_job(job_id: str):
        job = await rt.queue.get_job(job_id)
        return job.to_dict()

    @app.post("/jobs/{job_id}/replay")
    async def replay_job(job_id: str):
        job = await rt.queue.replay(job_id)
        return job.to_dict()

    @app.get("/breakers")
    def list_breakers():
        return {"breakers": rt.breakers.all_status(), "health": rt.breakers.health()}

    @app.get("/breakers/{name}")
    def get_breaker(name: str):
        if name not in rt.breakers:
            return Response(status_code=404)
        return rt.breakers.get_state(name)

    @app.post("/breakers/{name}/reset")
    def reset_breaker(name: str):
        if name not in rt.breakers:
            return Response(status_code=404)
        return rt.breakers.reset(name)

    return app
