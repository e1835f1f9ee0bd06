"""Single active client channel and inbound command routing.

Exactly one WebSocket is active. A new connection is assigned as the
active channel first, and only then is the previous one closed, all
under one lock so two hand-offs never interleave. Outbound events go
through a per-channel queue drained by a writer task; events produced
while no channel is attached are dropped (best-effort push).

Switching channels never touches the provider's subprocess.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from aiohttp import WSCloseCode, web

from chatrelay.adapters.commands import (
    ClientCommand,
    DeleteConversation,
    GetConversationList,
    GetPermissions,
    GetSettings,
    GetWorkspaceFiles,
    LoadConversation,
    NewSession,
    PermissionResponse,
    RemovePermission,
    SelectModel,
    SendMessage,
    StopRequest,
    UpdateSettings,
    parse_command,
)
from chatrelay.adapters.events import ClientEvent, Connected, Error, event_to_dict
from chatrelay.engine.errors import InvalidCommandError
from chatrelay.engine.provider import ChatProvider

logger = logging.getLogger(__name__)

QUEUE_MAXSIZE = 5000


@dataclass
class Channel:
    """One attached client transport."""
    ws: web.WebSocketResponse
    channel_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    queue: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=QUEUE_MAXSIZE))
    writer: asyncio.Task | None = field(default=None, repr=False)


class ConnectionManager:
    """Routes client commands to the provider and events back to the client."""

    def __init__(self, provider: ChatProvider) -> None:
        self._provider = provider
        self._active: Channel | None = None
        self._lock = asyncio.Lock()
        provider.set_sink(self.post)

    @property
    def provider(self) -> ChatProvider:
        return self._provider

    @property
    def active(self) -> Channel | None:
        return self._active

    @property
    def connected(self) -> bool:
        return self._active is not None

    def set_provider(self, provider: ChatProvider) -> None:
        """Route to a replacement provider (after the old one is cleaned up)."""
        self._provider.set_sink(None)
        self._provider = provider
        provider.set_sink(self.post)

    # ── outbound ──

    def post(self, event: ClientEvent) -> None:
        channel = self._active
        if channel is None:
            return
        try:
            channel.queue.put_nowait(event_to_dict(event))
        except asyncio.QueueFull:
            logger.warning(
                "Outbound queue full on channel %s, dropping %s",
                channel.channel_id, event.event_type,
            )

    async def _write_loop(self, channel: Channel) -> None:
        while True:
            message = await channel.queue.get()
            try:
                await channel.ws.send_json(message)
            except (ConnectionResetError, RuntimeError):
                logger.info("Channel %s went away while sending", channel.channel_id)
                return
            finally:
                channel.queue.task_done()

    async def drain(self) -> None:
        """Wait until everything queued for the active channel was sent."""
        channel = self._active
        if channel is None or channel.writer is None or channel.writer.done():
            return
        joined = asyncio.create_task(channel.queue.join())
        done, _ = await asyncio.wait(
            {joined, channel.writer}, return_when=asyncio.FIRST_COMPLETED,
        )
        if joined not in done:
            joined.cancel()

    # ── channel hand-off ──

    async def attach(self, ws: web.WebSocketResponse) -> Channel:
        """Make ``ws`` the active channel and send the initial state."""
        channel = Channel(ws=ws)
        channel.writer = asyncio.create_task(self._write_loop(channel))
        async with self._lock:
            previous, self._active = self._active, channel
            logger.info(
                "Client channel %s attached (replacing %s)",
                channel.channel_id, previous.channel_id if previous else None,
            )
            self.post(Connected())
            resumed = self._provider.session_resumed_event()
            if resumed is not None:
                self.post(resumed)
                self._provider.replay()
            # Until this close completes the old channel's reader may still
            # dispatch commands; the provider's busy check covers sends.
            if previous is not None:
                await self._close_channel(previous)
        return channel

    async def detach(self, channel: Channel) -> None:
        async with self._lock:
            if self._active is channel:
                self._active = None
                logger.info("Client channel %s detached", channel.channel_id)
        await self._stop_writer(channel)

    async def _close_channel(self, channel: Channel) -> None:
        await self._stop_writer(channel)
        try:
            await channel.ws.close(
                code=WSCloseCode.GOING_AWAY,
                message=b"Replaced by a newer connection",
            )
        except (ConnectionResetError, RuntimeError):
            logger.debug("Channel %s already closed", channel.channel_id)

    @staticmethod
    async def _stop_writer(channel: Channel) -> None:
        writer, channel.writer = channel.writer, None
        if writer is None or writer.done():
            return
        writer.cancel()
        try:
            await writer
        except asyncio.CancelledError:
            pass

    async def close(self) -> None:
        async with self._lock:
            channel, self._active = self._active, None
        if channel is not None:
            await self._close_channel(channel)

    # ── inbound ──

    async def handle_message(self, raw: str | bytes) -> None:
        """Parse and route one inbound message. Never raises."""
        try:
            command = parse_command(raw)
        except InvalidCommandError as exc:
            logger.warning("Rejected client message: %s", exc)
            self.post(Error(message=str(exc)))
            return
        logger.info("Received %s", command.command_type)
        try:
            await self.dispatch(command)
        except Exception as exc:
            logger.exception("Error handling %s", command.command_type)
            self.post(Error(message=f"Error: {exc}"))

    async def dispatch(self, command: ClientCommand) -> Any:
        provider = self._provider
        if isinstance(command, SendMessage):
            return await provider.send_message(
                command.text, command.plan_mode, command.thinking_mode,
            )
        if isinstance(command, NewSession):
            return provider.new_session()
        if isinstance(command, StopRequest):
            return provider.stop_request()
        if isinstance(command, GetWorkspaceFiles):
            return provider.get_workspace_files(command.search_term)
        if isinstance(command, SelectModel):
            return provider.select_model(command.model)
        if isinstance(command, GetSettings):
            return provider.get_settings()
        if isinstance(command, UpdateSettings):
            return provider.update_settings(command.settings)
        if isinstance(command, PermissionResponse):
            return await provider.respond_permission(
                command.id, command.approved, command.always_allow,
            )
        if isinstance(command, GetPermissions):
            return provider.get_permissions()
        if isinstance(command, RemovePermission):
            return await provider.remove_permission(command.tool, command.command)
        if isinstance(command, GetConversationList):
            return provider.get_conversation_list()
        if isinstance(command, LoadConversation):
            return provider.load_conversation(command.session_id)
        if isinstance(command, DeleteConversation):
            return provider.delete_conversation(command.session_id)
        raise InvalidCommandError(
            f"Unhandled message type: {command.command_type}", command.command_type,
        )
