from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from followthrough import __version__
from followthrough.core.audit import log_event
from followthrough.core.config import Settings
from followthrough.core.engine import Engine
from followthrough.core.errors import (
    IntegrationError,
    InvalidTransitionError,
    PendingMessageNotFoundError,
    TaskNotFoundError,
)
from followthrough.core.tasks import Task

logger = logging.getLogger("followthrough.gateway")


# ---- models ----

class CreateTaskRequest(BaseModel):
    title: str
    original_request: str = ""
    plan: Optional[List[str]] = None
    task_type: str = "discrete"
    poll_frequency: Optional[Any] = None
    messaging_channel: Optional[str] = None
    success_criteria: Optional[str] = None
    auto_send: bool = False
    notifications_disabled: bool = False
    start: bool = True


class RespondRequest(BaseModel):
    text: str = Field(min_length=1)


def _task_summary(task: Task) -> dict:
    return {
        "task_id": task.task_id,
        "title": task.title,
        "status": task.status,
        "task_type": task.task_type,
        "step": task.current_step.index,
        "steps": len(task.plan),
        "next_check": task.next_check.isoformat() if task.next_check else None,
        "pending_messages": len(task.pending_messages),
        "last_updated": task.last_updated.isoformat(),
    }


def create_app(engine: Optional[Engine] = None) -> FastAPI:
    if engine is None:
        engine = Engine(Settings.from_env())
    settings = engine.settings

    def _call(fn, *args: Any) -> Task:
        try:
            return fn(*args)
        except (TaskNotFoundError, PendingMessageNotFoundError) as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except InvalidTransitionError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except IntegrationError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc

    # ---- lifespan ----

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        engine.start()
        log_event(settings.data_dir, "app.start", {"version": __version__})
        logger.info("Gateway ready (data_dir=%s)", settings.data_dir)
        yield
        engine.stop()
        logger.info("Gateway stopped")

    app = FastAPI(title="followthrough", version=__version__, lifespan=lifespan)

    # ---- core routes ----

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/control/status")
    def control_status() -> dict:
        tasks = engine.list_tasks(include_hidden=True)
        return {
            "scheduler_running": engine.scheduler.running,
            "integrations": [i.value for i in engine.registry.ids()],
            "tasks_total": len(tasks),
            "tasks_active": len(engine.store.list_active()),
            "tasks_waiting_approval": len(engine.waiting_approval()),
            "tasks_waiting_for_input": len(engine.store.list_waiting_for_input()),
            "in_flight": sorted(engine.scheduler.in_flight()),
            "confirmations_pending": len(engine.gate.list_pending()),
        }

    # ---- tasks ----

    @app.get("/tasks")
    def list_tasks(include_hidden: bool = False) -> List[dict]:
        return [_task_summary(t) for t in engine.list_tasks(include_hidden=include_hidden)]

    @app.post("/tasks")
    def create_task(req: CreateTaskRequest) -> dict:
        try:
            task = engine.create_task(
                req.title,
                req.original_request,
                start=req.start,
                plan=req.plan,
                task_type=req.task_type,
                poll_frequency=req.poll_frequency,
                messaging_channel=req.messaging_channel,
                success_criteria=req.success_criteria,
                auto_send=req.auto_send,
                notifications_disabled=req.notifications_disabled,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return task.to_dict()

    @app.get("/tasks/{task_id}")
    def get_task(task_id: str) -> dict:
        return _call(engine.get_task, task_id).to_dict()

    @app.post("/tasks/{task_id}/cancel")
    def cancel_task(task_id: str) -> dict:
        return _task_summary(_call(engine.cancel_task, task_id))

    @app.post("/tasks/{task_id}/hide")
    def hide_task(task_id: str) -> dict:
        return _task_summary(_call(engine.hide_task, task_id))

    @app.post("/tasks/{task_id}/respond")
    def respond(task_id: str, req: RespondRequest) -> dict:
        return _task_summary(_call(engine.submit_user_response, task_id, req.text))

    @app.post("/tasks/{task_id}/pending/{message_id}/approve")
    def approve_message(task_id: str, message_id: str) -> dict:
        return _task_summary(_call(engine.approve_pending_message, task_id, message_id))

    @app.post("/tasks/{task_id}/pending/{message_id}/reject")
    def reject_message(task_id: str, message_id: str) -> dict:
        return _task_summary(_call(engine.reject_pending_message, task_id, message_id))

    # ---- ad hoc confirmations ----

    @app.get("/confirmations")
    def list_confirmations() -> List[dict]:
        return [c.to_dict() for c in engine.gate.list_pending()]

    @app.post("/confirmations/{confirmation_id}/approve")
    def approve_confirmation(confirmation_id: str) -> dict[str, str]:
        if not engine.gate.approve(confirmation_id):
            raise HTTPException(status_code=404, detail=f"No pending confirmation {confirmation_id}")
        return {"status": "approved"}

    @app.post("/confirmations/{confirmation_id}/reject")
    def reject_confirmation(confirmation_id: str) -> dict[str, str]:
        if not engine.gate.reject(confirmation_id):
            raise HTTPException(status_code=404, detail=f"No pending confirmation {confirmation_id}")
        return {"status": "rejected"}

    # ---- events, updates, session ----

    @app.post("/events/{name}")
    def trigger_event(name: str) -> Dict[str, Any]:
        fired = engine.trigger_event(name)
        log_event(settings.data_dir, "event.triggered", {"name": name, "fired": fired})
        return {"event": name, "fired": fired}

    @app.get("/updates")
    def drain_updates() -> List[dict]:
        return [u.to_dict() for u in engine.notifier.drain()]

    @app.post("/logout")
    def logout() -> Dict[str, int]:
        result = engine.logout()
        log_event(settings.data_dir, "session.logout", result)
        return result

    return app
