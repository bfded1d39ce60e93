"""HTTP surface for prompt submission and the executor polling protocol."""

from __future__ import annotations

import json
import uuid
from contextlib import asynccontextmanager
from typing import Any

from pydantic import BaseModel, Field, model_validator

from . import __version__
from .errors import RequestValidationError as StudioRequestValidationError
from .errors import StudioFlowError
from .orchestrator import Orchestrator
from .queue.models import Delivery
from .sweeper import LeaseSweeper
from .types import Result, TaskDescriptor


class PromptRequest(BaseModel):
    prompt: str = Field(min_length=1)
    session_id: str | None = None
    supersede: bool = False
    wait: bool = Field(default=False, description="Block until the first plan round has been applied.")


class RenewRequest(BaseModel):
    id: str | None = None
    task_id: str | None = None
    holder_id: str | None = None

    @model_validator(mode="after")
    def _check_fields(self) -> RenewRequest:
        if not (self.task_id or self.id):
            raise ValueError("one of 'task_id' or 'id' is required")
        return self

    @property
    def resolved_task_id(self) -> str:
        return self.task_id or self.id or ""


class ReportRequest(BaseModel):
    """Executor report.

    ``{"id": ..., "response": "..."}`` is the plugin's existing shape and means
    success; ``outcome`` states the result explicitly.
    """

    id: str | None = None
    task_id: str | None = None
    holder_id: str | None = None
    response: Any = None
    outcome: Result | None = None

    @model_validator(mode="after")
    def _check_fields(self) -> ReportRequest:
        if not (self.task_id or self.id):
            raise ValueError("one of 'task_id' or 'id' is required")
        if self.outcome is None and self.response is None:
            raise ValueError("one of 'outcome' or 'response' is required")
        return self

    @property
    def resolved_task_id(self) -> str:
        return self.task_id or self.id or ""

    def to_result(self) -> Result:
        if self.outcome is not None:
            return self.outcome
        return Result.success(self.response)


def delivery_payload(delivery: Delivery) -> dict[str, Any]:
    task = delivery.task
    return {
        "task_id": task.task_id,
        "session_id": task.session_id,
        "plan_id": task.plan_id,
        "step": task.step,
        "kind": task.kind.value,
        "payload": task.payload,
        "lease_expires_at": delivery.lease.expires_at.isoformat(),
        "id": task.task_id,
        "args": TaskDescriptor(kind=task.kind, payload=task.payload).to_wire_args(),
    }


def create_app(orchestrator: Orchestrator, *, include_docs: bool = True, run_sweeper: bool = True):
    """Create the FastAPI application bound to ``orchestrator``."""

    try:
        from fastapi import FastAPI, Request
        from fastapi.exceptions import RequestValidationError
        from fastapi.responses import JSONResponse
    except ModuleNotFoundError as exc:  # pragma: no cover - fastapi is a core dependency
        raise RuntimeError("FastAPI is required for the studioflow server.") from exc

    docs_url = "/docs" if include_docs else None
    openapi_url = "/openapi.json" if include_docs else None
    sweeper = LeaseSweeper(orchestrator, orchestrator.config.sweep_interval_s)

    @asynccontextmanager
    async def _lifespan(_app: FastAPI):
        if run_sweeper:
            sweeper.start()
        try:
            yield
        finally:
            await sweeper.stop()
            await orchestrator.aclose()

    app = FastAPI(
        title="studioflow",
        description="Plans Roblox Studio actions with an LLM and hands them to a polling plugin.",
        version=__version__,
        docs_url=docs_url,
        openapi_url=openapi_url,
        lifespan=_lifespan,
    )
    app.state.orchestrator = orchestrator
    app.state.sweeper = sweeper

    def _problem(exc: StudioFlowError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_problem_details().model_dump(exclude_none=True),
            media_type="application/problem+json",
        )

    @app.exception_handler(StudioFlowError)
    async def _handle_studioflow_error(_request: Request, exc: StudioFlowError):
        return _problem(exc)

    @app.exception_handler(RequestValidationError)
    async def _handle_validation_error(_request: Request, exc: RequestValidationError):
        detail = json.dumps(exc.errors(), ensure_ascii=False, default=str)
        return _problem(StudioRequestValidationError(detail))

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "sessions": len(orchestrator.sessions)}

    @app.post("/prompt")
    async def submit_prompt(payload: PromptRequest):
        session_id = payload.session_id or uuid.uuid4().hex
        submission = await orchestrator.submit(session_id, payload.prompt, supersede=payload.supersede)
        if payload.wait:
            await orchestrator.join(session_id)
            snapshot = orchestrator.session_snapshot(session_id)
            return JSONResponse(status_code=200, content=snapshot.model_dump(mode="json"))
        return JSONResponse(
            status_code=202,
            content={
                "status": "accepted",
                "session_id": session_id,
                "superseded_plan_id": submission.superseded_plan_id,
            },
        )

    @app.get("/request")
    async def poll_task(holder_id: str | None = None):
        delivery = await orchestrator.poll(holder_id)
        if delivery is None:
            return JSONResponse(status_code=202, content={"status": "empty"})
        return JSONResponse(status_code=200, content=delivery_payload(delivery))

    @app.post("/response")
    async def report_result(payload: ReportRequest) -> dict[str, Any]:
        ack = await orchestrator.report(payload.resolved_task_id, payload.to_result(), holder=payload.holder_id)
        response: dict[str, Any] = {
            "status": "ack",
            "task_id": ack.task.task_id,
            "state": ack.task.state.value,
            "plan_status": ack.plan.status.value,
        }
        if ack.aborted is not None:
            response["aborted_task_ids"] = list(ack.aborted.aborted_task_ids)
        return response

    @app.post("/renew")
    async def renew_lease(payload: RenewRequest) -> dict[str, Any]:
        lease = await orchestrator.renew(payload.resolved_task_id, payload.holder_id)
        return {
            "status": "renewed",
            "task_id": lease.task_id,
            "lease_expires_at": lease.expires_at.isoformat(),
        }

    @app.get("/sessions/{session_id}")
    async def get_session(session_id: str) -> dict[str, Any]:
        return orchestrator.session_snapshot(session_id).model_dump(mode="json")

    @app.delete("/sessions/{session_id}")
    async def close_session(session_id: str) -> dict[str, Any]:
        expired = await orchestrator.close_session(session_id)
        return {"status": "closed", "session_id": session_id, "expired_task_ids": expired}

    return app


__all__ = ["PromptRequest", "RenewRequest", "ReportRequest", "create_app", "delivery_payload"]
