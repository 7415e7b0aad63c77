import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

from .analytics import agent_analytics
from .budget import StepBudget
from .config import CONFIG_PATH, AppSettings, load_settings, save_settings
from .db import Database
from .llm import LLMClient
from .mailer import Mailer
from .memory import MemoryStore
from .orchestrator import TurnEvent, new_session_id, new_turn_id, run_agent_turn
from .schemas import AgentRequest
from .tavily import TavilyClient
from .tools import ToolServices
from .vector_search import VectorSearch

logger = logging.getLogger("uvicorn.error")

STREAM_HEADERS = {"X-Vercel-AI-Data-Stream": "v1"}


def build_services(
    settings: AppSettings,
    db: Database,
    llm_client: Any,
    tavily_client: TavilyClient,
    mailer: Mailer,
) -> ToolServices:
    async def embed(text: str):
        endpoint = settings.embedding_endpoint
        return await llm_client.embed(text, model=endpoint.model_id, base_url=endpoint.base_url)

    return ToolServices(
        settings=settings,
        db=db,
        llm=llm_client,
        vector_search=VectorSearch(db, embed),
        memory=MemoryStore(db, embed, min_confidence=settings.memory_min_confidence),
        tavily=tavily_client if tavily_client.enabled else None,
        mailer=mailer if mailer.available else None,
    )


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_services(request: Request) -> ToolServices:
    return request.app.state.services


def get_turn_tasks(request: Request) -> Dict[str, asyncio.Task]:
    return request.app.state.turn_tasks


def get_turn_stop_events(request: Request) -> Dict[str, asyncio.Event]:
    return request.app.state.turn_stop_events


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


router = APIRouter()


@router.post("/agent")
async def agent_turn(
    payload: AgentRequest,
    services: ToolServices = Depends(get_services),
    turn_tasks: Dict[str, asyncio.Task] = Depends(get_turn_tasks),
    turn_stop_events: Dict[str, asyncio.Event] = Depends(get_turn_stop_events),
):
    if not payload.project_id:
        return PlainTextResponse("Project ID is required", status_code=400)
    try:
        turn_id = new_turn_id()
        session_id = payload.session_id or new_session_id()
        stop_event = asyncio.Event()
        queue: asyncio.Queue = asyncio.Queue()

        async def emit(event: TurnEvent) -> None:
            await queue.put(event)

        async def run_and_cleanup() -> None:
            try:
                await run_agent_turn(
                    payload,
                    services,
                    emit,
                    turn_id=turn_id,
                    session_id=session_id,
                    stop_event=stop_event,
                )
            except Exception as exc:
                logger.exception("Turn %s crashed", turn_id)
                await queue.put(TurnEvent("error", str(exc) or exc.__class__.__name__))
            finally:
                turn_tasks.pop(turn_id, None)
                turn_stop_events.pop(turn_id, None)
                await queue.put(None)

        turn_stop_events[turn_id] = stop_event
        turn_tasks[turn_id] = asyncio.create_task(run_and_cleanup())
    except Exception as exc:
        logger.exception("Agent request failed")
        return JSONResponse({"error": str(exc) or "Internal server error"}, status_code=500)

    async def frames():
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event.frame()
        finally:
            # Client went away before the turn finished: stop at the next checkpoint.
            if not stop_event.is_set() and turn_id in turn_tasks:
                stop_event.set()

    headers = {**STREAM_HEADERS, "X-Turn-Id": turn_id, "X-Session-Id": session_id}
    return StreamingResponse(frames(), media_type="text/plain; charset=utf-8", headers=headers)


@router.post("/agent/{turn_id}/stop")
async def stop_turn(
    turn_id: str,
    turn_stop_events: Dict[str, asyncio.Event] = Depends(get_turn_stop_events),
):
    stop_event = turn_stop_events.get(turn_id)
    if stop_event is None:
        raise HTTPException(status_code=404, detail="Turn not found")
    stop_event.set()
    return {"ok": True, "status": "stopping"}


@router.get("/api/projects/{project_id}/conversations")
async def list_project_sessions(project_id: str, db: Database = Depends(get_db)):
    return await db.list_sessions(project_id)


@router.get("/api/projects/{project_id}/conversations/{session_id}")
async def list_session_messages(project_id: str, session_id: str, limit: int = 500, db: Database = Depends(get_db)):
    return await db.list_session_messages(project_id, session_id, limit=limit)


@router.get("/api/projects/data/{data_id}/references")
async def get_item_references(data_id: str, db: Database = Depends(get_db)):
    item = await db.get_project_data(data_id)
    if not item:
        raise HTTPException(status_code=404, detail="Item not found")
    rows = await db.get_data_references(data_id)
    return {
        "itemId": data_id,
        "filename": item.get("filename") or "Unknown",
        "type": item.get("type"),
        "projectId": item.get("project_id"),
        "totalReferences": len(rows),
        "references": [
            {
                "conversationId": row["conversation_id"],
                "sessionId": row["session_id"],
                "timestamp": row["timestamp"],
                "context": row["context"],
                "toolCall": row["tool_call"],
                "userMessage": row["context"] or None,
                "conversationTimestamp": row["conversation_timestamp"],
            }
            for row in rows
        ],
    }


@router.get("/api/agent/analytics")
async def get_agent_analytics(
    projectId: Optional[str] = None,
    sessionId: Optional[str] = None,
    startDate: Optional[str] = None,
    endDate: Optional[str] = None,
    db: Database = Depends(get_db),
    settings: AppSettings = Depends(get_settings),
):
    max_tool_steps = StepBudget(limit=settings.max_step_limit).max_tool_calls
    return await agent_analytics(
        db, max_tool_steps, project_id=projectId, session_id=sessionId, start=startDate, end=endDate
    )


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Settings payload must be an object.")
    try:
        new_settings = AppSettings(**{**settings.model_dump(), **body})
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    save_settings(new_settings, config_path=config_path)
    await db.save_config(new_settings.to_safe_dict())
    state = request.app.state
    state.settings = new_settings
    state.tavily_client.api_key = new_settings.tavily_api_key
    state.mailer.config = new_settings.smtp
    state.mailer.enabled = new_settings.email_enabled
    state.services = build_services(new_settings, db, state.llm_client, state.tavily_client, state.mailer)
    return {"ok": True, "settings": new_settings.to_safe_dict()}


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    llm_client: Optional[Any] = None,
    tavily_client: Optional[TavilyClient] = None,
    mailer: Optional[Mailer] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        await app.state.db.save_config(app.state.settings.to_safe_dict())
        try:
            yield
        finally:
            for task in list(app.state.turn_tasks.values()):
                task.cancel()
            await app.state.llm_client.close()
            await app.state.tavily_client.close()

    app = FastAPI(title="Research Agent", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.llm_client = llm_client or LLMClient(
        settings.llm_base_url,
        api_key=settings.llm_api_key,
        timeout=settings.llm_timeout_s,
        max_attempts=settings.llm_max_attempts,
        max_output_tokens=settings.max_output_tokens,
    )
    app.state.tavily_client = tavily_client or TavilyClient(settings.tavily_api_key)
    app.state.mailer = mailer or Mailer(settings.smtp, enabled=settings.email_enabled)
    app.state.services = build_services(
        settings, app.state.db, app.state.llm_client, app.state.tavily_client, app.state.mailer
    )
    app.state.turn_tasks = {}
    app.state.turn_stop_events = {}
    app.state.config_path = config_path or CONFIG_PATH
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import uvicorn

    settings = app.state.settings
    try:
        uvicorn.run("research_agent.main:app", host=settings.host, port=settings.port)
    except KeyboardInterrupt:
        pass
