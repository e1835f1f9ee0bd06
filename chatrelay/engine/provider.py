"""Provider instance: owns the current session for one project root.

The provider composes the process supervisor, stream decoder,
conversation and settings stores, and the permission bridge. Every
generated event leaves through a single sink (the active client
channel, when there is one). Recordable events are appended to the
session transcript in the same step as they are pushed.

A provider is bound to its project root for life. Switching projects
means ``await old.cleanup()`` and constructing a new instance.
"""
from __future__ import annotations

import logging
from functools import partial
from pathlib import Path
from typing import Callable

from chatrelay.adapters.events import (
    ClientEvent,
    ConversationDeleted,
    ConversationList,
    Error,
    SessionCleared,
    SessionResumed,
    SetProcessing,
    SettingsSnapshot,
    UpdateTotals,
    UserInput,
    WorkspaceFiles,
    dict_to_event,
)
from chatrelay.adapters.permission_bridge import PermissionBridge
from chatrelay.adapters.permission_store import PermissionStore
from chatrelay.engine.config import RelayConfig
from chatrelay.engine.errors import (
    AssistantNotFoundError,
    ProcessBusyError,
    StorageError,
)
from chatrelay.engine.process_supervisor import (
    ProcessRun,
    ProcessSupervisor,
    build_message,
)
from chatrelay.engine.stream_decoder import StreamDecoder
from chatrelay.shared.file_utils import search_workspace_files
from chatrelay.shared.models.session import Session
from chatrelay.shared.services.conversation_store import ConversationStore
from chatrelay.shared.services.durable_write import atomic_write_json
from chatrelay.shared.services.settings import SettingsStore

logger = logging.getLogger(__name__)

EventSink = Callable[[ClientEvent], None]

MCP_CONFIG_FILENAME = "mcp-servers.json"
CONVERSATIONS_DIRNAME = "conversations"
PERMISSION_REQUESTS_DIRNAME = "permission-requests"
STOPPED_MESSAGE = "Claude code was stopped."


class ChatProvider:
    """Session state, subprocess control and persistence for one project."""

    def __init__(
        self,
        project_root: Path,
        config: RelayConfig | None = None,
        *,
        sink: EventSink | None = None,
    ) -> None:
        self.project_root = Path(project_root).resolve()
        self.config = config or RelayConfig()
        self.store_dir = self.project_root / self.config.store_dir_name
        self.store_dir.mkdir(parents=True, exist_ok=True)
        self._sink = sink

        self.conversations = ConversationStore(self.store_dir / CONVERSATIONS_DIRNAME)
        self.settings = SettingsStore(self.store_dir)
        self.permission_store = PermissionStore(self.store_dir)
        self.permissions = PermissionBridge(
            self.store_dir / PERMISSION_REQUESTS_DIRNAME,
            self.permission_store,
            self._post,
        )

        self.mcp_config_path = self.store_dir / MCP_CONFIG_FILENAME
        self._write_mcp_config()
        self.supervisor = ProcessSupervisor(
            self.config.assistant_argv,
            self.project_root,
            mcp_config_path=self.mcp_config_path,
            permission_tool=self.config.permission_tool,
        )

        self.session = self.conversations.load_latest() or Session()
        if self.session.entries:
            logger.info(
                "Resumed latest conversation %s (%d entries)",
                self.session.session_id, self.session.message_count,
            )
        self._processing = False

    # ── lifecycle ──

    async def start(self) -> None:
        await self.permissions.start()

    async def cleanup(self) -> None:
        """Stop any in-flight request, save, and close the permission watch."""
        self.stop_request()
        self._save(self.session)
        await self.permissions.close()
        logger.info("Provider for %s cleaned up", self.project_root)

    def _write_mcp_config(self) -> None:
        broker = self.config.permission_broker_command
        if not broker:
            return
        mcp_config = {
            "mcpServers": {
                self.config.permission_server_name: {
                    "command": broker[0],
                    "args": broker[1:],
                    "env": {
                        "CLAUDE_PERMISSIONS_PATH": str(
                            self.store_dir / PERMISSION_REQUESTS_DIRNAME
                        ),
                    },
                },
            },
        }
        try:
            atomic_write_json(self.mcp_config_path, mcp_config)
        except StorageError:
            logger.error("Failed to write MCP config %s", self.mcp_config_path, exc_info=True)
            return
        logger.info("MCP config written to %s", self.mcp_config_path)

    # ── event fan-out ──

    def set_sink(self, sink: EventSink | None) -> None:
        self._sink = sink

    def _post(self, event: ClientEvent) -> None:
        sink = self._sink
        if sink is None:
            logger.debug("No client attached; dropping %s", event.event_type)
            return
        try:
            sink(event)
        except Exception:
            logger.exception("Event sink failed for %s", event.event_type)

    def _record(self, event: ClientEvent) -> None:
        if event.recordable:
            self.session.append(event.event_type, event.payload())
        self._post(event)

    def _record_for(self, session: Session, event: ClientEvent) -> None:
        # Late output from a run whose session was replaced is dropped.
        if session is not self.session:
            logger.debug("Dropping %s for a replaced session", event.event_type)
            return
        self._record(event)

    def _save(self, session: Session) -> None:
        self.conversations.save(session)

    # ── session state ──

    @property
    def is_processing(self) -> bool:
        return self._processing

    def session_resumed_event(self) -> SessionResumed | None:
        session = self.session
        if not session.session_id and not session.entries:
            return None
        return SessionResumed(
            session_id=session.session_id,
            total_cost=session.total_cost,
            total_tokens_input=session.total_tokens_input,
            total_tokens_output=session.total_tokens_output,
            request_count=session.request_count,
        )

    def totals_event(self) -> UpdateTotals:
        session = self.session
        return UpdateTotals(
            total_cost=session.total_cost,
            total_tokens_input=session.total_tokens_input,
            total_tokens_output=session.total_tokens_output,
            request_count=session.request_count,
        )

    def replay(self) -> None:
        """Push every stored entry in order, then a totals snapshot."""
        for entry in self.session.entries:
            event = dict_to_event({"type": entry.kind, "data": entry.data})
            if event is not None:
                self._post(event)
        self._post(self.totals_event())

    # ── requests ──

    async def send_message(
        self,
        text: str,
        plan_mode: bool = False,
        thinking_mode: bool = False,
    ) -> bool:
        """Start one assistant request. False when rejected or not launched."""
        # _processing is set before the first await, so overlapping sends see it.
        if self._processing or self.supervisor.is_running:
            run = self.supervisor.current
            self._post(Error(message=str(ProcessBusyError(run.pid if run else None))))
            return False

        session = self.session
        args = self.supervisor.build_args(
            resume_id=session.session_id if session.can_resume else None,
            continue_last=bool(session.entries),
            model=self.settings.settings.model_override,
            thinking_mode=thinking_mode,
        )

        self._record(UserInput(text=text))
        self._processing = True
        self._post(SetProcessing(is_processing=True))

        decoder = StreamDecoder(session, partial(self._record_for, session))
        try:
            await self.supervisor.spawn(
                args,
                build_message(text, plan_mode),
                on_stdout=decoder.feed,
                on_exit=partial(self._on_exit, session, decoder),
            )
        except ProcessBusyError as exc:
            self._clear_processing()
            self._post(Error(message=str(exc)))
            return False
        except (AssistantNotFoundError, OSError) as exc:
            logger.error("Failed to start assistant: %s", exc)
            self._clear_processing()
            message = str(exc) if isinstance(exc, AssistantNotFoundError) else f"Failed to start Claude: {exc}"
            self._record(Error(message=message))
            self._save(session)
            return False
        return True

    def _on_exit(self, session: Session, decoder: StreamDecoder, run: ProcessRun) -> None:
        decoder.flush()
        current = session is self.session
        if not self.supervisor.is_running:
            self._clear_processing()
        if current and not run.stopped and run.returncode not in (0, None):
            message = run.stderr.strip() or f"Claude exited with code {run.returncode}"
            self._record(Error(message=message))
        self._save(session)

    def _clear_processing(self) -> None:
        if not self._processing:
            return
        self._processing = False
        self._post(SetProcessing(is_processing=False))

    def stop_request(self) -> bool:
        """Terminate the in-flight request. No-op when nothing is running."""
        if not self.supervisor.stop():
            return False
        self._processing = False
        self._post(SetProcessing(is_processing=False))
        self._record(Error(message=STOPPED_MESSAGE))
        return True

    def new_session(self) -> None:
        self.stop_request()
        self._save(self.session)
        self.session = Session()
        logger.info("Started a new session")
        self._post(SessionCleared())

    # ── conversations ──

    def get_conversation_list(self) -> None:
        self._post(ConversationList(conversations=self.conversations.list()))

    def load_conversation(self, session_id: str) -> bool:
        session = self.conversations.load(session_id)
        if session is None:
            self._post(Error(message=f"Conversation not found: {session_id}"))
            return False
        self.stop_request()
        self._save(self.session)
        self.session = session
        resumed = self.session_resumed_event()
        if resumed is not None:
            self._post(resumed)
        self.replay()
        return True

    def delete_conversation(self, session_id: str) -> bool:
        success = self.conversations.delete(session_id)
        self._post(ConversationDeleted(session_id=session_id, success=success))
        return success

    # ── workspace, settings and permissions ──

    def get_workspace_files(self, search_term: str = "") -> None:
        files = search_workspace_files(
            self.project_root, search_term, self.config.workspace_file_limit,
        )
        self._post(WorkspaceFiles(files=[f.to_dict() for f in files]))

    def select_model(self, model: str) -> None:
        self.settings.select_model(model)
        logger.info("Model selected: %s", self.settings.settings.selected_model)

    def get_settings(self) -> None:
        settings = self.settings.settings
        self._post(SettingsSnapshot(
            selected_model=settings.selected_model,
            thinking_mode=settings.thinking_mode,
        ))

    def update_settings(self, changes: dict) -> None:
        self.settings.update(changes)

    async def respond_permission(self, request_id: str, approved: bool, always_allow: bool) -> None:
        await self.permissions.respond(request_id, approved, always_allow)

    def get_permissions(self) -> None:
        self.permissions.publish_rules()

    async def remove_permission(self, tool: str, command: str) -> None:
        await self.permissions.remove_rule(tool, command)
