"""
Chat Orchestrator

Coordinates one Game Master turn from the player's message to the terminal
client event. A turn walks an explicit state machine:

    Preparing -> Thinking -> Generating -> Auditing -> (Correcting -> Generating)
              -> Finalizing -> Done | Error | Aborted

``ChatOrchestrator`` is the long-lived service that owns the MCP connections
and builds a ``GameMasterTurn`` per request. The turn owns its messages and
its ``TurnState`` exclusively; nothing is shared between concurrent turns.
"""

from __future__ import annotations

import asyncio
import logging
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from saga_gm.chat.action_extractor import extract_actions
from saga_gm.chat.event_channel import ClientDisconnectedError, EventChannel
from saga_gm.chat.hallucination_auditor import detect
from saga_gm.chat.models import (
    ClientEvent,
    ClientEventType,
    LLMConfig,
    LLMRequest,
    NormalizedMessage,
    NormalizedTool,
)
from saga_gm.chat.streaming_handler import EmitFn, GenerationError, PassResult, StreamingHandler
from saga_gm.chat.tool_executor import McpToolExecutor, SafeToolExecutor
from saga_gm.chat.world_context import WorldContext, WorldContextLoader
from saga_gm.config import GameMasterMessages, GameMasterSettings
from saga_gm.history.models import ChatEvent
from saga_gm.history.repository import to_normalized_messages
from saga_gm.tool_catalog import ToolCatalog

if TYPE_CHECKING:
    from saga_gm.clients.llm_client import LLMClient
    from saga_gm.clients.mcp_client import MCPClient
    from saga_gm.config import Configuration
    from saga_gm.history.repository import ChatRepository

logger = logging.getLogger(__name__)


class TurnPhase(StrEnum):
    PREPARING = "preparing"
    THINKING = "thinking"
    GENERATING = "generating"
    AUDITING = "auditing"
    CORRECTING = "correcting"
    FINALIZING = "finalizing"
    DONE = "done"
    ERROR = "error"
    ABORTED = "aborted"


class TurnState(BaseModel):
    """Everything a turn knows about its own progress."""

    request_id: str
    player_id: str
    phase: TurnPhase = TurnPhase.PREPARING
    attempt: int = 0
    remaining_corrections: int = 1
    visible_output_sent: bool = False
    is_battle: bool = False
    system_prompt: str = ""
    # Messages as they were when Preparing finished; each attempt restarts here
    base_messages: list[NormalizedMessage] = Field(default_factory=list)
    messages: list[NormalizedMessage] = Field(default_factory=list)
    full_text: str = ""
    collected_tools: list[str] = Field(default_factory=list)

    def transition(self, phase: TurnPhase) -> None:
        logger.debug("Turn %s: %s -> %s", self.request_id, self.phase, phase)
        self.phase = phase

    def record_pass(self, result: PassResult) -> None:
        self.messages = result.messages
        self.full_text += result.text
        for name in result.tool_names:
            if name not in self.collected_tools:
                self.collected_tools.append(name)


class Heartbeat:
    """
    Re-emits a ``thinking`` event every ``interval`` seconds while a turn
    waits on the model. Used as an async context manager; leaving the block
    stops it, and ``stop`` is idempotent.
    """

    def __init__(self, send: EmitFn, interval: float, template: str) -> None:
        self.send = send
        self.interval = interval
        self.template = template
        self.beats = 0
        self.stop_count = 0
        self._task: asyncio.Task[None] | None = None
        self._started_at = 0.0

    async def __aenter__(self) -> Heartbeat:
        self._started_at = asyncio.get_running_loop().time()
        self._task = asyncio.create_task(self._run())
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.stop()

    @property
    def is_running(self) -> bool:
        return self._task is not None

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        self.stop_count += 1
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(self.interval)
            self.beats += 1
            elapsed = int(loop.time() - self._started_at)
            message = self.template.format(dots="." * (self.beats % 3 + 1), elapsed=elapsed)
            try:
                await self.send(ClientEvent(type="thinking", data={"message": message}))
            except ClientDisconnectedError:
                return


class GameMasterTurn:
    """One player turn; create a new instance per request."""

    heartbeat_class: type[Heartbeat] = Heartbeat

    def __init__(
        self,
        *,
        streaming_handler: StreamingHandler,
        context_loader: WorldContextLoader,
        catalog: ToolCatalog | None,
        repo: ChatRepository,
        settings: GameMasterSettings,
        llm_config: LLMConfig,
        channel: EventChannel,
        player_id: str,
        message: str | None,
        request_id: str,
    ) -> None:
        self.streaming_handler = streaming_handler
        self.context_loader = context_loader
        self.catalog = catalog
        self.repo = repo
        self.settings = settings
        self.llm_config = llm_config
        self.channel = channel
        self.message = message.strip() if message else None
        self.state = TurnState(
            request_id=request_id,
            player_id=player_id,
            remaining_corrections=settings.correction_budget,
        )
        self.tools: list[NormalizedTool] = []

    async def run(self) -> None:
        """
        Drive the turn to exactly one terminal event, or to silence when the
        client went away.
        """
        state = self.state
        try:
            if await self._prepare():
                return
            state.transition(TurnPhase.THINKING)
            await self._send_status(self.settings.messages.thinking)
            async with self.heartbeat_class(
                self.channel.send,
                self.settings.heartbeat_interval_seconds,
                self.settings.messages.heartbeat,
            ):
                await self._generate_with_retries()
            await self._finalize()
        except ClientDisconnectedError:
            state.transition(TurnPhase.ABORTED)
            logger.info("Turn %s aborted: client disconnected", state.request_id)
        except asyncio.CancelledError:
            state.transition(TurnPhase.ABORTED)
            logger.info("Turn %s cancelled", state.request_id)
            raise
        except Exception as e:
            state.transition(TurnPhase.ERROR)
            if isinstance(e, GenerationError):
                logger.error("Turn %s failed after %d attempt(s): %s", state.request_id, state.attempt, e)
            else:
                logger.exception("Turn %s failed", state.request_id)
            try:
                await self.channel.send(
                    ClientEvent(type="error", data={"message": self.settings.messages.failure})
                )
            except ClientDisconnectedError:
                logger.debug("Client gone before error event for %s", state.request_id)

    # ------------------------------------------------------------------
    # Preparing
    # ------------------------------------------------------------------

    async def _prepare(self) -> bool:
        """Build the conversation; returns True when a stored reply was replayed."""
        state = self.state
        await self._send_status(self.settings.messages.preparing, event_type="preparing")

        context: WorldContext = await self.context_loader.load(state.player_id)
        state.is_battle = context.is_battle
        state.system_prompt = context.system_prompt
        if self.catalog is not None:
            self.tools = self.catalog.tools_for_mode("battle" if context.is_battle else "exploration")

        history = await self.repo.get_conversation_history(state.player_id, self.settings.history_limit)
        messages = to_normalized_messages(history)

        if self.message:
            stored = await self.repo.add_event(
                ChatEvent(
                    conversation_id=state.player_id,
                    type="user_message",
                    role="user",
                    content=self.message,
                    extra={"request_id": state.request_id},
                )
            )
            if not stored and await self._replay_stored_reply():
                return True

            content = self.message
            if state.is_battle:
                content += self.settings.battle_user_suffix
            messages.append(NormalizedMessage.user(content))

        state.base_messages = messages
        logger.info(
            "← Orchestrator: prepared turn %s (history=%d, battle=%s, tools=%d)",
            state.request_id,
            len(history),
            state.is_battle,
            len(self.tools),
        )
        return False

    async def _replay_stored_reply(self) -> bool:
        state = self.state
        existing = await self.repo.get_event_by_request_id(
            state.player_id, f"assistant:{state.request_id}"
        )
        if existing is None or not existing.content:
            logger.info("Duplicate request %s has no stored reply; generating", state.request_id)
            return False

        logger.info("→ Frontend: replaying stored reply for request_id=%s", state.request_id)
        await self._emit(ClientEvent(type="text", data={"content": existing.content}))
        await self.channel.send(ClientEvent(type="done", data={}))
        state.transition(TurnPhase.DONE)
        return True

    # ------------------------------------------------------------------
    # Generating / Auditing
    # ------------------------------------------------------------------

    async def _generate_with_retries(self) -> None:
        state = self.state
        max_attempts = self.settings.max_generation_attempts
        while True:
            state.attempt += 1
            state.messages = list(state.base_messages)
            try:
                await self._generate_and_audit()
                return
            except GenerationError as e:
                if state.visible_output_sent or state.attempt >= max_attempts:
                    raise
                logger.warning(
                    "Generation attempt %d/%d failed before any output, retrying: %s",
                    state.attempt,
                    max_attempts,
                    e,
                )
                await asyncio.sleep(self.settings.retry_backoff_seconds)

    async def _generate_and_audit(self) -> None:
        state = self.state
        while True:
            state.transition(TurnPhase.GENERATING)
            result = await self.streaming_handler.run_pass(
                request=LLMRequest(
                    model=self.llm_config.model,
                    system_prompt=state.system_prompt,
                    messages=state.messages,
                    tools=self.tools or None,
                    temperature=self.llm_config.temperature,
                    max_tokens=self.llm_config.max_tokens,
                ),
                config=self.llm_config,
                actor_id=state.player_id,
                conversation_id=state.player_id,
                request_id=state.request_id,
                emit=self._emit,
            )
            state.record_pass(result)

            if state.remaining_corrections <= 0:
                return

            state.transition(TurnPhase.AUDITING)
            finding = detect(result.text, state.collected_tools, state.is_battle)
            if not finding.has_hallucination:
                return

            state.remaining_corrections -= 1
            state.transition(TurnPhase.CORRECTING)
            logger.info("Turn %s: corrective pass (%s)", state.request_id, ", ".join(finding.claims))
            await self._send_status(
                self.settings.messages.verifying_battle
                if state.is_battle
                else self.settings.messages.verifying_items
            )
            if result.text:
                state.messages.append(NormalizedMessage.assistant(result.text))
            state.messages.append(
                NormalizedMessage.user(self.settings.messages.correction.format(reason=finding.reason))
            )

    # ------------------------------------------------------------------
    # Finalizing
    # ------------------------------------------------------------------

    async def _finalize(self) -> None:
        state = self.state
        state.transition(TurnPhase.FINALIZING)

        text = state.full_text
        if not text.strip() and state.collected_tools:
            text = self.settings.messages.tool_fallback.format(tools=", ".join(state.collected_tools))
            await self._emit(ClientEvent(type="text", data={"content": text}))
        elif not text.strip():
            logger.warning("Turn %s produced neither narrative nor tool calls", state.request_id)

        extracted = extract_actions(text, self.settings.max_suggested_actions)
        if extracted is not None:
            await self._emit(
                ClientEvent(
                    type="actions",
                    data={"actions": [action.model_dump() for action in extracted.actions]},
                )
            )
            text = extracted.clean_text

        if text:
            await self.repo.add_event(
                ChatEvent(
                    conversation_id=state.player_id,
                    type="assistant_message",
                    role="assistant",
                    content=text,
                    model=self.llm_config.model,
                    extra={
                        "request_id": f"assistant:{state.request_id}",
                        "user_request_id": state.request_id,
                        "tools": list(state.collected_tools),
                    },
                )
            )

        await self.channel.send(ClientEvent(type="done", data={}))
        state.transition(TurnPhase.DONE)
        logger.info(
            "← Orchestrator: turn %s done (attempts=%d, tools=%d, chars=%d)",
            state.request_id,
            state.attempt,
            len(state.collected_tools),
            len(text),
        )

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    async def _emit(self, event: ClientEvent) -> None:
        if event.is_visible:
            self.state.visible_output_sent = True
        await self.channel.send(event)

    async def _send_status(self, message: str, event_type: ClientEventType = "thinking") -> None:
        await self.channel.send(ClientEvent(type=event_type, data={"message": message}))


class ChatOrchestrator:
    """
    Game Master service: owns the MCP connections, the tool catalog and the
    executor, and runs one ``GameMasterTurn`` per request.
    """

    def __init__(
        self,
        clients: list[MCPClient],
        llm_client: LLMClient,
        repo: ChatRepository,
        configuration: Configuration,
    ) -> None:
        self.clients = clients
        self.llm_client = llm_client
        self.repo = repo
        self.configuration = configuration

        self.catalog: ToolCatalog | None = None
        self.tool_executor: SafeToolExecutor | None = None
        self.context_loader: WorldContextLoader | None = None

        self._init_lock = asyncio.Lock()
        self._ready = asyncio.Event()

    async def initialize(self) -> None:
        """Connect MCP clients and build the catalog, executor and context loader."""
        async with self._init_lock:
            if self._ready.is_set():
                logger.debug("Chat orchestrator already initialized")
                return

            logger.info("→ Orchestrator: connecting to %d MCP client(s)", len(self.clients))
            connection_semaphore = asyncio.Semaphore(5)

            async def connect_with_semaphore(client: MCPClient) -> None:
                async with connection_semaphore:
                    await client.connect()

            connection_results = await asyncio.gather(
                *(connect_with_semaphore(c) for c in self.clients),
                return_exceptions=True,
            )

            connected_clients: list[MCPClient] = []
            for client, result in zip(self.clients, connection_results, strict=True):
                if isinstance(result, Exception):
                    logger.warning("Client '%s' failed to connect: %s", client.name, result)
                else:
                    connected_clients.append(client)

            if not connected_clients:
                logger.warning("No MCP clients connected - the Game Master has no game tools")
            else:
                logger.info(
                    "← Orchestrator: connected to %d out of %d MCP clients",
                    len(connected_clients),
                    len(self.clients),
                )

            settings = self.configuration.get_game_master_config()
            self.catalog = ToolCatalog(
                connected_clients,
                battle_tools=settings.battle_tools,
                admin_tools=settings.admin_tools,
            )
            await self.catalog.initialize()

            self.tool_executor = SafeToolExecutor(
                McpToolExecutor(
                    self.catalog,
                    actor_argument=settings.actor_argument,
                    logging_config=self.configuration.get_mcp_logging_config(),
                )
            )
            self.context_loader = WorldContextLoader(
                self.catalog, self.tool_executor, self.configuration.get_world_config()
            )

            logger.info("← Orchestrator: ready - %d tools", len(self.catalog.tool_names))
            self._ready.set()

    async def process_turn(
        self,
        player_id: str,
        message: str | None,
        request_id: str,
        channel: EventChannel,
        model: str | None = None,
    ) -> TurnState:
        """
        Run one turn, writing its events to ``channel``.

        Settings are read per turn so runtime configuration changes apply to
        the next request. Returns the final turn state.
        """
        await self._ready.wait()
        assert self.tool_executor is not None
        assert self.context_loader is not None

        logger.info("→ Orchestrator: processing turn %s for player %s", request_id, player_id)
        try:
            try:
                settings = self.configuration.get_game_master_config()
                llm_config = self.configuration.get_llm_config(model)
            except ValueError as e:
                logger.error("Turn %s rejected: %s", request_id, e)
                await channel.send(
                    ClientEvent(type="error", data={"message": GameMasterMessages().failure})
                )
                return TurnState(request_id=request_id, player_id=player_id, phase=TurnPhase.ERROR)

            turn = GameMasterTurn(
                streaming_handler=StreamingHandler(
                    self.llm_client, self.tool_executor, self.repo, settings
                ),
                context_loader=self.context_loader,
                catalog=self.catalog,
                repo=self.repo,
                settings=settings,
                llm_config=llm_config,
                channel=channel,
                player_id=player_id,
                message=message,
                request_id=request_id,
            )
            await turn.run()
            return turn.state
        finally:
            channel.close()

    async def get_history(self, player_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        events = await self.repo.get_events(player_id, limit)
        return [event.model_dump(mode="json") for event in events]

    async def cleanup(self) -> None:
        """Close MCP connections and the history store."""
        for client in self.clients:
            try:
                await client.close()
            except Exception as e:
                logger.warning("Error closing client %s: %s", client.name, e)
        await self.repo.close()
