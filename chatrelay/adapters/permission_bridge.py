"""Tool-approval bridge between the client and the permission broker.

Two paths share the same ``permissionRequest`` event and the same
``respond()`` entry point:

- File-based (primary): the out-of-process broker drops
  ``<id>.request`` JSON files into the requests directory. Each one is
  surfaced to the client under a fresh correlation id; answering it
  writes ``<id>.response`` and removes the request file.
- In-memory (legacy): ``request_approval()`` suspends until the client
  answers, short-circuiting on allow-listed ``(tool, command)`` pairs.

Delivery from the directory watch is at-least-once. Duplicate
notifications for a request that is still pending are dropped, response
writes are whole-file replacements, and request deletion tolerates a
file that is already gone.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any, Callable

from watchfiles import Change, awatch

from chatrelay.adapters.events import ClientEvent, PermissionRequest, Permissions
from chatrelay.adapters.permission_store import PermissionStore
from chatrelay.engine.errors import PermissionBridgeError, StorageError
from chatrelay.shared.models.session import utcnow_iso
from chatrelay.shared.services.durable_write import atomic_write_json, read_json

logger = logging.getLogger(__name__)

REQUEST_SUFFIX = ".request"
RESPONSE_SUFFIX = ".response"

PostFn = Callable[[ClientEvent], None]


@dataclass
class _PendingRequest:
    tool: str
    command: str
    resolve: Callable[[bool], None]


class PermissionBridge:
    """Routes approval prompts to the client and answers back to the broker."""

    def __init__(
        self,
        requests_dir: Path,
        store: PermissionStore,
        post: PostFn,
        *,
        debounce_ms: int = 200,
    ) -> None:
        self._dir = requests_dir
        self._store = store
        self._post = post
        self._debounce_ms = debounce_ms
        self._pending: dict[str, _PendingRequest] = {}
        # Request files currently surfaced to the client.
        self._inflight_files: set[Path] = set()
        self._lock = asyncio.Lock()
        self._stop_event: asyncio.Event | None = None
        self._watch_task: asyncio.Task | None = None

    @property
    def requests_dir(self) -> Path:
        return self._dir

    @property
    def pending_ids(self) -> list[str]:
        return list(self._pending)

    # ── lifecycle ──

    async def start(self) -> None:
        """Pick up requests already on disk, then watch for new ones."""
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            logger.error("Cannot create permission requests dir %s", self._dir, exc_info=True)
            return
        for path in sorted(self._dir.glob(f"*{REQUEST_SUFFIX}")):
            await self.handle_request_file(path)
        self._stop_event = asyncio.Event()
        self._watch_task = asyncio.create_task(self._watch())

    async def close(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        task, self._watch_task = self._watch_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _watch(self) -> None:
        logger.info("Watching %s for permission requests", self._dir)
        try:
            async for changes in awatch(
                self._dir,
                stop_event=self._stop_event,
                debounce=self._debounce_ms,
            ):
                for change, raw_path in changes:
                    path = Path(raw_path)
                    if change == Change.deleted or path.suffix != REQUEST_SUFFIX:
                        continue
                    if path.exists():
                        await self.handle_request_file(path)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Permission request watcher stopped")

    # ── file-based requests ──

    async def handle_request_file(self, path: Path) -> str | None:
        """Surface one broker request. Returns the correlation id, if any."""
        async with self._lock:
            if path in self._inflight_files:
                logger.debug("Duplicate notification for %s", path.name)
                return None
            try:
                request = read_json(path)
                if not isinstance(request, dict):
                    raise ValueError("request is not a JSON object")
            except (StorageError, ValueError) as exc:
                # A half-written file is retried on its next change event.
                logger.warning("%s", PermissionBridgeError(str(path), str(exc)))
                return None

            tool = str(request.get("tool") or "unknown")
            command = json.dumps(request.get("input"), indent=2)
            resolve = partial(self._write_response, path, request.get("id"))

            if self._store.is_allowed(tool, command):
                logger.info("Auto-approving allow-listed %s request %s", tool, path.name)
                resolve(True)
                return None

            self._inflight_files.add(path)
            correlation_id = uuid.uuid4().hex
            self._pending[correlation_id] = _PendingRequest(tool, command, resolve)

        logger.info("Permission request %s for tool %s (%s)", correlation_id, tool, path.name)
        self._post(PermissionRequest(id=correlation_id, tool=tool, command=command))
        return correlation_id

    def _write_response(self, request_path: Path, broker_id: Any, approved: bool) -> None:
        response_path = request_path.with_suffix(RESPONSE_SUFFIX)
        response = {
            "id": broker_id,
            "approved": approved,
            "timestamp": utcnow_iso(),
        }
        try:
            atomic_write_json(response_path, response, indent=None)
        except StorageError:
            logger.error("Failed to write %s", response_path, exc_info=True)
        try:
            request_path.unlink(missing_ok=True)
        except OSError:
            logger.warning("Failed to remove %s", request_path, exc_info=True)
        self._inflight_files.discard(request_path)

    # ── in-memory requests ──

    def _mint_request_id(self) -> str:
        stamp = time.time_ns() // 1_000_000
        request_id = f"perm_{stamp}"
        while request_id in self._pending:
            stamp += 1
            request_id = f"perm_{stamp}"
        return request_id

    async def request_approval(self, tool: str, command: str) -> bool:
        """Ask the client to approve ``tool`` running ``command``.

        Allow-listed pairs resolve True immediately without a prompt.
        Otherwise waits, without blocking the loop, until ``respond()``.
        """
        loop = asyncio.get_running_loop()
        async with self._lock:
            if self._store.is_allowed(tool, command):
                return True
            request_id = self._mint_request_id()
            future: asyncio.Future[bool] = loop.create_future()

            def _resolve(approved: bool) -> None:
                if not future.done():
                    future.set_result(approved)

            self._pending[request_id] = _PendingRequest(tool, command, _resolve)

        self._post(PermissionRequest(id=request_id, tool=tool, command=command))
        return await future

    # ── client operations ──

    async def respond(self, request_id: str, approved: bool, always_allow: bool = False) -> bool:
        """Resolve a pending request. Unknown ids are silently dropped."""
        async with self._lock:
            pending = self._pending.pop(request_id, None)
            if pending is None:
                logger.debug("Response for unknown permission request %s", request_id)
                return False
            try:
                pending.resolve(approved)
            except Exception:
                logger.exception("Failed to resolve permission request %s", request_id)
            if approved and always_allow:
                self._store.add(pending.tool, pending.command)
        logger.info(
            "Permission %s %s (always_allow=%s)",
            request_id, "approved" if approved else "denied", always_allow,
        )
        return True

    def publish_rules(self) -> None:
        self._post(Permissions(rules=self._store.list_rules()))

    async def remove_rule(self, tool: str, command: str) -> None:
        async with self._lock:
            self._store.remove(tool, command)
        self.publish_rules()
