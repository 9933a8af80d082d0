"""
SSE Server for the Game Master

Thin communication layer between the game frontend and the orchestrator:
one POST per player turn, answered with a ``text/event-stream`` of
``data: {"type": ..., "data": ...}`` records. Settings and history endpoints
round out the HTTP surface. All game logic lives in ``ChatOrchestrator``.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

import uvicorn
from fastapi import APIRouter, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from saga_gm.chat.chat_orchestrator import ChatOrchestrator
from saga_gm.chat.event_channel import EventChannel
from saga_gm.clients.model_registry import ModelDefinition

if TYPE_CHECKING:
    from saga_gm.clients.llm_client import LLMClient
    from saga_gm.clients.mcp_client import MCPClient
    from saga_gm.config import Configuration
    from saga_gm.history.repository import ChatRepository

logger = logging.getLogger(__name__)

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


class GameChatRequest(BaseModel):
    """Body of ``POST /api/game/chat``; no message means a system-triggered turn."""

    player_id: str = Field(min_length=1)
    message: str | None = None
    model: str | None = None
    request_id: str | None = None


class SettingsUpdate(BaseModel):
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    add_custom_model: ModelDefinition | None = None
    delete_custom_model: str | None = None


class SSEServer:
    """
    HTTP communication server.

    Handles request validation, SSE framing and client disconnects; every
    turn is delegated to the orchestrator.
    """

    def __init__(
        self,
        clients: list[MCPClient],
        llm_client: LLMClient,
        repo: ChatRepository,
        configuration: Configuration,
        orchestrator: ChatOrchestrator | None = None,
    ) -> None:
        self.configuration = configuration
        self.repo = repo
        self.orchestrator = orchestrator or ChatOrchestrator(
            clients, llm_client, repo, configuration
        )
        self._turn_tasks: set[asyncio.Task[Any]] = set()
        self.app = self._create_app()

    def _create_app(self) -> FastAPI:
        app = FastAPI(title="Saga Game Master")
        router = APIRouter(prefix="/api")

        app.add_middleware(
            CORSMiddleware,
            allow_origins=self.configuration.get_http_config()["cors_origins"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @app.get("/health")
        async def health() -> dict[str, Any]:
            catalog = self.orchestrator.catalog
            return {
                "status": "healthy",
                "tools": len(catalog.tool_names) if catalog else 0,
            }

        @router.post("/game/chat")
        async def game_chat(body: GameChatRequest) -> StreamingResponse:
            request_id = body.request_id or str(uuid.uuid4())
            logger.info(
                "Received turn %s for player %s: %.50s",
                request_id,
                body.player_id,
                body.message or "<system turn>",
            )
            return StreamingResponse(
                self._stream_turn(body, request_id),
                media_type="text/event-stream",
                headers=SSE_HEADERS,
            )

        @router.get("/settings")
        async def get_settings() -> dict[str, Any]:
            return self._settings_payload()

        @router.post("/settings")
        async def update_settings(update: SettingsUpdate) -> dict[str, Any]:
            try:
                self._apply_settings(update)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e)) from e
            return self._settings_payload()

        @router.get("/history/{player_id}")
        async def get_history(player_id: str, limit: int | None = 50) -> list[dict[str, Any]]:
            return await self.orchestrator.get_history(player_id, limit)

        @router.delete("/history/{player_id}")
        async def clear_history(player_id: str) -> dict[str, int]:
            removed = await self.repo.clear_conversation(player_id)
            logger.info("Cleared %d event(s) for player %s", removed, player_id)
            return {"removed": removed}

        # Prevent static analyzers from marking route handlers as unused
        __keep_for_pyright = (health, game_chat, get_settings, update_settings, get_history, clear_history)
        del __keep_for_pyright

        app.include_router(router)
        return app

    async def _stream_turn(self, body: GameChatRequest, request_id: str) -> AsyncIterator[str]:
        channel = EventChannel(self.configuration.get_http_config()["stream_buffer_events"])
        task = asyncio.create_task(
            self.orchestrator.process_turn(
                body.player_id, body.message, request_id, channel, model=body.model
            )
        )
        self._turn_tasks.add(task)
        task.add_done_callback(self._on_turn_done)
        try:
            async for record in channel.iter_sse():
                yield record
        finally:
            if not task.done():
                # Response closed before the turn finished: the client left
                channel.mark_disconnected()
                task.cancel()

    def _on_turn_done(self, task: asyncio.Task[Any]) -> None:
        self._turn_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Turn task failed: %s", exc)

    def _settings_payload(self) -> dict[str, Any]:
        llm = self.configuration.get_llm_config()
        return {
            "model": llm.model,
            "temperature": llm.temperature,
            "max_tokens": llm.max_tokens,
            "api_format": llm.api_format,
            "provider_id": llm.provider_id,
            "has_api_key": bool(llm.api_key),
            "providers": self.configuration.get_providers(),
            "models": self.configuration.get_available_models(),
        }

    def _apply_settings(self, update: SettingsUpdate) -> None:
        if update.add_custom_model is not None:
            self.configuration.add_custom_model(update.add_custom_model)
        if update.delete_custom_model is not None:
            self.configuration.delete_custom_model(update.delete_custom_model)
        if update.model is not None:
            self.configuration.update_llm_model(update.model)
        if update.temperature is not None:
            self.configuration.update_llm_temperature(update.temperature)
        if update.max_tokens is not None:
            self.configuration.update_llm_max_tokens(update.max_tokens)

    async def start_server(self) -> None:
        """Initialize the orchestrator and serve until shutdown."""
        await self.orchestrator.initialize()

        http_config = self.configuration.get_http_config()
        host, port = http_config["host"], http_config["port"]
        logger.info("Starting SSE server on %s:%s", host, port)

        server = uvicorn.Server(uvicorn.Config(self.app, host=host, port=port, log_level="info"))
        try:
            await server.serve()
        finally:
            logger.info("Shutting down SSE server and cleaning up resources...")
            for task in list(self._turn_tasks):
                task.cancel()
            try:
                await self.orchestrator.cleanup()
                logger.info("Chat service cleanup completed")
            except Exception as e:
                logger.error("Error during chat service cleanup: %s", e)


async def run_sse_server(
    clients: list[MCPClient],
    llm_client: LLMClient,
    repo: ChatRepository,
    configuration: Configuration,
) -> None:
    server = SSEServer(clients, llm_client, repo, configuration)
    await server.start_server()
