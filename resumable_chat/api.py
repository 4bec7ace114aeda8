"""FastAPI entry point for the resumable chat service."""

from __future__ import annotations

import argparse
import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import FastAPI, HTTPException, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, validator
import uvicorn

from .config import ChatConfig, ChatLLMConfig
from .errors import AnchorNotFound, ConcurrentModification, PersistenceFailure
from .history import SUBMIT_MESSAGE
from .llm_client import ChatLLMClient
from .models import USER, ChatMessage, generate_id
from .service import ChatSessionCoordinator, ModelProvider
from .store import ChatStore, FileChatStore, InMemoryChatStore
from .streams import InMemoryStreamSink, StreamMultiplexer, StreamSink, encode_sse
from .utils import setup_logging

logger = logging.getLogger(__name__)

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


# ---------- Request Models ----------
class MessagePayload(BaseModel):
    id: Optional[str] = Field(None, description="Client-generated message id; assigned by the server when absent.")
    role: str = USER
    parts: List[Dict[str, Any]] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @validator("role")
    def role_not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("role must not be empty")
        return value

    def to_message(self) -> ChatMessage:
        return ChatMessage(
            id=self.id or generate_id(),
            role=self.role,
            parts=[dict(part) for part in self.parts],
            metadata=dict(self.metadata),
        )


class ChatRequest(BaseModel):
    id: str = Field(..., description="Chat identifier.")
    trigger: Literal["submit-message", "regenerate-message"] = SUBMIT_MESSAGE
    message: Optional[MessagePayload] = Field(None, description="New user message for submit-message.")
    message_id: Optional[str] = Field(
        None,
        alias="messageId",
        description="Edit anchor for submit-message, regeneration anchor for regenerate-message.",
    )

    @validator("id")
    def id_not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("field must not be empty")
        return value


class ChatStateResponse(BaseModel):
    id: str
    messages: List[Dict[str, Any]] = Field(default_factory=list)
    activeStreamId: Optional[str] = None
    version: int = 0
    updatedAt: float


# ---------- FastAPI Factory ----------
def build_coordinator(
    config: ChatConfig,
    *,
    store: Optional[ChatStore] = None,
    provider: Optional[ModelProvider] = None,
    sink: Optional[StreamSink] = None,
) -> ChatSessionCoordinator:
    """Wire the store, model provider and stream multiplexer for one process."""
    if store is None:
        store = FileChatStore(config.store_dir) if config.store_dir else InMemoryChatStore()
    if provider is None:
        provider = ChatLLMClient(config.llm, model_kwargs=config.model_kwargs)
    if sink is None and config.enable_resumable_streams:
        sink = InMemoryStreamSink(ttl_seconds=config.stream_ttl_seconds)

    multiplexer = StreamMultiplexer(sink)
    if not multiplexer.resumable:
        logger.info("Resumable streams are disabled; responses are delivered live only")
    return ChatSessionCoordinator(store, provider, multiplexer, config)


def create_app(
    chat_config: Optional[ChatConfig] = None,
    *,
    store: Optional[ChatStore] = None,
    provider: Optional[ModelProvider] = None,
    sink: Optional[StreamSink] = None,
    log_dir: Optional[str] = None,
) -> FastAPI:
    if log_dir:
        setup_logging(log_dir, logging.INFO)

    config = chat_config or ChatConfig()
    coordinator = build_coordinator(config, store=store, provider=provider, sink=sink)

    app = FastAPI(title="Resumable Chat", version="0.1.0")
    app.state.coordinator = coordinator

    @app.get("/health")
    async def health() -> Dict[str, object]:
        return {"status": "ok", "resumable": app.state.coordinator.multiplexer.resumable}

    @app.post("/chat/new")
    async def new_chat() -> Dict[str, str]:
        try:
            state = await run_in_threadpool(app.state.coordinator.create_chat)
        except PersistenceFailure as exc:
            logger.exception("Failed to create chat")
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        logger.info("Created chat %s", state.id)
        return {"id": state.id}

    @app.post("/chat")
    async def chat(request: ChatRequest):
        logger.info(
            "Chat request %s for chat %s (anchor=%s)",
            request.trigger,
            request.id,
            request.message_id,
        )
        message = request.message.to_message() if request.message else None
        try:
            stream = await run_in_threadpool(
                app.state.coordinator.stream_chat,
                request.id,
                request.trigger,
                message=message,
                message_id=request.message_id,
            )
        except AnchorNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except ConcurrentModification as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except PersistenceFailure as exc:
            logger.exception("Failed to persist chat %s before streaming", request.id)
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        except Exception as exc:
            logger.exception("Chat request failed (chat_id=%s)", request.id)
            raise HTTPException(status_code=500, detail="Chat request failed") from exc

        return StreamingResponse(encode_sse(stream), media_type="text/event-stream", headers=SSE_HEADERS)

    @app.get("/chat/{chat_id}/stream")
    async def resume_chat_stream(chat_id: str):
        try:
            stream = await run_in_threadpool(app.state.coordinator.resume_stream, chat_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except PersistenceFailure as exc:
            logger.exception("Failed to read chat %s for resumption", chat_id)
            raise HTTPException(status_code=500, detail=str(exc)) from exc

        if stream is None:
            return Response(status_code=204)
        logger.info("Resuming stream for chat %s", chat_id)
        return StreamingResponse(encode_sse(stream), media_type="text/event-stream", headers=SSE_HEADERS)

    @app.get("/chat/{chat_id}", response_model=ChatStateResponse)
    async def chat_state(chat_id: str):
        try:
            state = await run_in_threadpool(app.state.coordinator.get_chat, chat_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except PersistenceFailure as exc:
            logger.exception("Failed to read chat %s", chat_id)
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return state.to_dict()

    return app


# ---------- CLI ----------
def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the chat service with resumable streaming responses.")
    parser.add_argument("--host", default="0.0.0.0", help="Host interface to bind.")
    parser.add_argument("--port", type=int, default=8004, help="Port to bind.")
    parser.add_argument("--log_dir", help="Directory for application logs.")
    parser.add_argument("--llm_endpoint", default="http://localhost:8000/v1/chat/completions", help="LLM endpoint.")
    parser.add_argument("--llm_model", default="gpt-4o-mini", help="Model name for completions.")
    parser.add_argument("--request_timeout", type=int, default=60, help="Timeout for LLM calls (seconds).")
    parser.add_argument("--system_prompt", help="Optional system prompt prepended to every model call.")
    parser.add_argument("--store_dir", help="Directory for chat JSON files. Chats stay in memory when unset.")
    parser.add_argument("--disable_resume", action="store_true", help="Disable resumable streams.")
    parser.add_argument(
        "--stream_ttl_seconds",
        type=int,
        default=60 * 60,
        help="Seconds a finished stream stays replayable before eviction.",
    )
    return parser.parse_args(argv)


def config_from_args(args: argparse.Namespace) -> ChatConfig:
    return ChatConfig(
        llm=ChatLLMConfig(
            endpoint=args.llm_endpoint,
            model=args.llm_model,
            request_timeout=args.request_timeout,
        ),
        system_prompt=args.system_prompt,
        store_dir=args.store_dir,
        enable_resumable_streams=not args.disable_resume,
        stream_ttl_seconds=args.stream_ttl_seconds,
    )


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    app = create_app(config_from_args(args), log_dir=args.log_dir)
    logger.info("Starting chat service on %s:%d", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
