"""FastAPI server streaming chat turns with conversation memory."""

from __future__ import annotations

import argparse
import logging
import os
from typing import Dict, Optional

from fastapi import FastAPI, HTTPException
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, validator
import uvicorn

from chat_memory import ChatConfig, ChatStreamService, EmbeddingConfig, GenerationConfig
from chat_memory.errors import TurnPersistenceError
from chat_memory.service import CONVERSATION_ID_MAX, CONVERSATION_ID_MIN
from chat_memory.utils import setup_logging
from message_store import MessageStore, SQLMessageStore

logger = logging.getLogger(__name__)

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


# ---------- Request Models ----------
class ChatMessageModel(BaseModel):
    role: str = Field(..., description="'user' or 'assistant'.")
    content: str


class ChatStreamRequest(BaseModel):
    conversation_id: Optional[int] = Field(
        None,
        ge=CONVERSATION_ID_MIN,
        le=CONVERSATION_ID_MAX,
        description="Conversation to continue. Unknown ids start a new conversation.",
    )
    messages: list[ChatMessageModel] = Field(..., description="Transcript ending with the new user message.")

    @validator("messages")
    def _not_empty(cls, value: list) -> list:
        if not value:
            raise ValueError("messages must not be empty")
        return value


class ConversationResponse(BaseModel):
    conversation_id: int


class HistoryResponse(BaseModel):
    conversation_id: int
    messages: list[dict] = Field(default_factory=list)


# ---------- FastAPI Factory ----------
def create_app(
    log_dir: Optional[str] = "./logs",
    chat_config: Optional[ChatConfig] = None,
    *,
    store: Optional[MessageStore] = None,
    service: Optional[ChatStreamService] = None,
) -> FastAPI:
    if log_dir:
        setup_logging(log_dir, logging.INFO)

    if service is None:
        config = chat_config or ChatConfig()
        service = ChatStreamService(config, store=store or SQLMessageStore(config.database_url))

    app = FastAPI(title="Chat Memory Server", version="0.1.0")
    app.state.chat_service = service

    async def open_stream(transcript, conversation_id: Optional[int]) -> StreamingResponse:
        try:
            turn = await run_in_threadpool(app.state.chat_service.start_turn, transcript, conversation_id)
        except ValueError as exc:
            logger.warning("Rejected chat turn: %s", exc)
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except TurnPersistenceError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        except Exception as exc:
            logger.exception("Chat request failed (conversation_id=%s)", conversation_id)
            raise HTTPException(status_code=500, detail="Chat request failed") from exc

        headers = dict(STREAM_HEADERS)
        headers["X-Conversation-Id"] = str(turn.conversation_id)
        return StreamingResponse(
            app.state.chat_service.stream_turn(turn),
            media_type="text/event-stream",
            headers=headers,
        )

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/chat/create", response_model=ConversationResponse)
    async def create_conversation():
        try:
            conversation_id = await run_in_threadpool(app.state.chat_service.create_conversation)
        except Exception as exc:
            logger.exception("Error creating conversation")
            raise HTTPException(status_code=500, detail="Failed to create conversation") from exc
        return {"conversation_id": conversation_id}

    @app.get("/chat/stream")
    async def chat_stream(conv: Optional[str] = None, conversation_id: Optional[str] = None):
        """EventSource-friendly entry point: the transcript travels as JSON in ``conv``."""
        if not conv:
            raise HTTPException(status_code=400, detail="Missing conversation data")
        cid: Optional[int] = None
        if conversation_id:
            try:
                cid = int(conversation_id)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail="Invalid conversation_id") from exc
        logger.info("Streaming chat for conversation %s", cid if cid is not None else "default")
        return await open_stream(conv, cid)

    @app.post("/chat/stream")
    async def chat_stream_json(request: ChatStreamRequest):
        logger.info(
            "Streaming chat for conversation %s (%d message(s))",
            request.conversation_id if request.conversation_id is not None else "default",
            len(request.messages),
        )
        transcript = [{"role": msg.role, "content": msg.content} for msg in request.messages]
        return await open_stream(transcript, request.conversation_id)

    @app.get("/conversations/{conversation_id}/messages", response_model=HistoryResponse)
    async def conversation_history(conversation_id: int):
        logger.info("Fetching history for conversation %d", conversation_id)
        try:
            payload = await run_in_threadpool(app.state.chat_service.get_history, conversation_id)
        except ValueError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return payload

    return app


# ---------- CLI ----------
def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the streaming chat server with conversation memory.")
    parser.add_argument("--host", default="0.0.0.0", help="Host interface to bind.")
    parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", "4000")), help="Port to bind.")
    parser.add_argument("--log_dir", default="./logs", help="Directory for application logs.")
    parser.add_argument(
        "--database_url",
        default=os.environ.get("DATABASE_URL", "sqlite:///./chat_memory.db"),
        help="SQLAlchemy URL of the message store.",
    )
    parser.add_argument(
        "--generation_endpoint",
        default="http://localhost:11434/api/generate",
        help="Streaming generate endpoint.",
    )
    parser.add_argument(
        "--chat_model",
        default=os.environ.get("CHAT_MODEL", "deepseek-r1:14b"),
        help="Model name for generation.",
    )
    parser.add_argument(
        "--embedding_endpoint",
        default="http://localhost:11434/api/embed",
        help="Embedding endpoint.",
    )
    parser.add_argument(
        "--embedding_model",
        default=os.environ.get("EMBEDDING_MODEL", "nomic-embed-text"),
        help="Model name for embeddings.",
    )
    parser.add_argument("--embedding_dim", type=int, default=768, help="Dimension of the embedding vectors.")
    parser.add_argument("--recent_limit", type=int, default=10, help="Recent messages kept as short-term memory.")
    parser.add_argument("--rag_limit", type=int, default=3, help="Similar messages retrieved per turn.")
    parser.add_argument(
        "--heartbeat_interval",
        type=float,
        default=10.0,
        help="Seconds of stream inactivity before a keep-alive ping is sent.",
    )
    parser.add_argument(
        "--relevant_first",
        action="store_true",
        help="Place retrieved context ahead of the recent transcript in the prompt.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    chat_cfg = ChatConfig(
        generation=GenerationConfig(endpoint=args.generation_endpoint, model=args.chat_model),
        embedding=EmbeddingConfig(
            endpoint=args.embedding_endpoint,
            model=args.embedding_model,
            dimension=args.embedding_dim,
        ),
        database_url=args.database_url,
        recent_limit=args.recent_limit,
        rag_limit=args.rag_limit,
        heartbeat_interval=args.heartbeat_interval,
        relevant_first=args.relevant_first,
    )

    app = create_app(args.log_dir, chat_cfg)
    logger.info("Starting chat memory server on %s:%d", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
