import json
import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from codex_relay.app_container import RelayServices
from codex_relay.domain.errors import AmbiguousError, NotFoundError, ValidationError
from codex_relay.domain.jobs import ChatJobRecord
from codex_relay.domain.sessions import Channel, Session
from codex_relay.services.commands import is_command

logger = logging.getLogger(__name__)

CHAT_ID_HEADER = "x-chat-id"


class CommandRequest(BaseModel):
    text: str


class JobRequest(BaseModel):
    prompt: str


def _plain(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _session_to_dict(session: Session) -> Dict[str, Any]:
    return {k: _plain(v) for k, v in asdict(session).items()}


def _job_to_dict(job: ChatJobRecord) -> Dict[str, Any]:
    data = {k: _plain(v) for k, v in asdict(job).items()}
    data["terminal"] = job.is_terminal
    return data


def _sse(event: str, payload: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(payload, ensure_ascii=True)}\n\n"


def create_app(services: RelayServices) -> FastAPI:
    app = FastAPI(title="Codex Relay Control Center", version="0.1.0")
    registry = services.registry
    router = services.commands
    queue = services.job_queue

    def _chat_id(request: Request) -> str:
        # Identity is established by the fronting proxy; this service only reads it.
        chat_id = (request.headers.get(CHAT_ID_HEADER) or "").strip()
        if not chat_id:
            raise HTTPException(status_code=400, detail="Missing X-Chat-Id header.")
        return chat_id

    def _owned_job(chat_id: str, job_id: str) -> ChatJobRecord:
        job = queue.get(job_id)
        if job is None or job.chat_id != chat_id:
            raise HTTPException(status_code=404, detail="Job not found")
        return job

    @app.on_event("startup")
    async def _start_queue() -> None:
        await queue.start()

    @app.on_event("shutdown")
    async def _stop_queue() -> None:
        await queue.stop()

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "busy_sessions": len(services.locks.busy_sessions()),
            "jobs_in_flight": queue.in_flight,
        }

    @app.get("/api/session")
    async def current_session(request: Request) -> Dict[str, Any]:
        chat_id = _chat_id(request)
        session = registry.get_or_create_active_session(chat_id, Channel.WEB)
        prefs = registry.get_preferences(session.id)
        return {
            "session": _session_to_dict(session),
            "plan_mode": prefs.plan_mode,
            "reasoning_effort": prefs.reasoning_effort,
            "log_enabled": services.interactions.is_enabled(),
        }

    @app.post("/api/command")
    async def run_command(request: Request, body: CommandRequest) -> Dict[str, Any]:
        chat_id = _chat_id(request)
        reply = await router.handle(chat_id, Channel.WEB, body.text)
        return {
            "reply": reply.text,
            "session": _session_to_dict(reply.session),
            "log_enabled": reply.log_enabled,
            "failed": reply.failed,
        }

    @app.post("/api/jobs", status_code=202)
    async def submit_job(request: Request, body: JobRequest) -> Dict[str, Any]:
        chat_id = _chat_id(request)
        prompt = body.prompt.strip()
        if not prompt:
            raise HTTPException(status_code=400, detail="Prompt is required.")
        if is_command(prompt):
            raise HTTPException(status_code=400, detail="Commands go through /api/command.")
        job = await queue.submit(chat_id, prompt, Channel.WEB)
        return _job_to_dict(job)

    @app.get("/api/jobs/{job_id}")
    async def get_job(request: Request, job_id: str) -> Dict[str, Any]:
        return _job_to_dict(_owned_job(_chat_id(request), job_id))

    @app.get("/api/jobs/{job_id}/stream")
    async def stream_job(request: Request, job_id: str) -> StreamingResponse:
        chat_id = _chat_id(request)
        subscription = queue.events.subscribe(job_id)
        try:
            current = _owned_job(chat_id, job_id)
        except HTTPException:
            queue.events.unsubscribe(job_id, subscription)
            raise

        async def _events() -> AsyncIterator[str]:
            try:
                yield _sse("job", _job_to_dict(current))
                if not current.is_terminal:
                    while True:
                        item: Optional[ChatJobRecord] = await subscription.get()
                        if item is None:
                            break
                        yield _sse("job", _job_to_dict(item))
                yield _sse("end", {"id": job_id})
            finally:
                queue.events.unsubscribe(job_id, subscription)

        return StreamingResponse(_events(), media_type="text/event-stream", headers={"Cache-Control": "no-cache"})

    @app.get("/api/history")
    async def history(request: Request, limit: int = 10, target: str = "") -> List[Dict[str, Any]]:
        chat_id = _chat_id(request)
        try:
            if target:
                session_id = registry.resolve_session_id(target, chat_id)
                found = registry.get_session(session_id) if session_id else None
                if found is None or found.chat_id != chat_id:
                    raise NotFoundError(f"Session not found: {target}")
            else:
                session_id = registry.get_or_create_active_session(chat_id, Channel.WEB).id
            rows = registry.list_history(session_id, max(1, min(limit, 100)))
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except (AmbiguousError, ValidationError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return [{k: _plain(v) for k, v in asdict(r).items()} for r in rows]

    return app
