"""WebSocket editor bridge: one practice session per connected editor.

The main entry point is ``websocket_editor()``, which is mounted as
``/ws/editor`` by server.py. The connected editor is the host: it owns the
real buffer, shows pickers and messages, and reports the learner's edits.
"""

import asyncio
import json
import logging
import uuid
from functools import partial
from typing import Any, Awaitable

from fastapi import WebSocket, WebSocketDisconnect

from .auth import CredentialStore
from .controller import PracticeController
from .document import ContentChange, Editor, Position, Range, TextDocument
from .runner import CodeRunner
from .telemetry import TelemetryClient
from .ws_constants import (
    ERR_COMMAND_FAILED,
    ERR_INVALID_CHANGE,
    ERR_UNKNOWN_COMMAND,
    ERR_UNKNOWN_DOCUMENT,
    LEVEL_ERROR,
    LEVEL_INFO,
    LEVEL_WARNING,
    MSG_APPLY_EDIT,
    MSG_AUTH_CALLBACK,
    MSG_CLOSE_DOCUMENT,
    MSG_COMMAND,
    MSG_COMMANDS,
    MSG_CONFIRM,
    MSG_DOCUMENT_CHANGED,
    MSG_ERROR,
    MSG_INPUT_BOX,
    MSG_OPEN_DOCUMENT,
    MSG_OPEN_EXTERNAL,
    MSG_PROGRESS,
    MSG_QUICK_PICK,
    MSG_RESPONSE,
    MSG_SAVE_DOCUMENT,
    MSG_SELECTION_CHANGED,
    MSG_SET_CONTEXT,
    MSG_SHOW_MESSAGE,
    MSG_STATUS,
)

logger = logging.getLogger(__name__)


class HostDisconnectedError(ConnectionError):
    """The editor went away while we were waiting on it."""


class EditRejectedError(RuntimeError):
    """The editor did not apply an edit we sent."""


def _log_task_exception(task: asyncio.Task):
    """Log exceptions from background sends instead of silently swallowing."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background send failed: %s", exc, exc_info=exc)


def _parse_position(data: dict) -> Position:
    return Position(int(data["line"]), int(data["character"]))


class WebSocketHost:
    """The editor as seen by the controller, spoken to over the socket."""

    def __init__(self, websocket: WebSocket):
        self.ws = websocket
        self.active_editor: Editor | None = None
        self._ws_alive = True
        self._pending: dict[str, asyncio.Future] = {}
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def safe_send(self, data: dict) -> bool:
        """Send JSON to client, return False if disconnected."""
        if not self._ws_alive:
            return False
        try:
            await self.ws.send_json(data)
            return True
        except (WebSocketDisconnect, RuntimeError):
            self._ws_alive = False
            return False

    def _send_in_background(self, data: dict) -> None:
        task = asyncio.create_task(self.safe_send(data))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        task.add_done_callback(_log_task_exception)

    async def _request(self, msg_type: str, payload: dict) -> Any:
        """Send a request and wait, without a timeout, for the client's response."""
        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            if not await self.safe_send({"type": msg_type, "request_id": request_id, **payload}):
                raise HostDisconnectedError(f"Editor disconnected before {msg_type}")
            return await future
        finally:
            self._pending.pop(request_id, None)

    def resolve(self, request_id: str, value: Any) -> bool:
        future = self._pending.get(request_id)
        if future is None or future.done():
            return False
        future.set_result(value)
        return True

    def cancel_pending(self) -> None:
        self._ws_alive = False
        for future in self._pending.values():
            if not future.done():
                future.set_exception(HostDisconnectedError("Editor disconnected"))
        self._pending.clear()
        for task in list(self._background):
            task.cancel()

    # ------------------------------------------------------------------
    # Messages and prompts
    # ------------------------------------------------------------------

    async def _show(self, level: str, message: str) -> None:
        await self.safe_send({"type": MSG_SHOW_MESSAGE, "level": level, "message": message})

    async def show_info(self, message: str) -> None:
        await self._show(LEVEL_INFO, message)

    async def show_warning(self, message: str) -> None:
        await self._show(LEVEL_WARNING, message)

    async def show_error(self, message: str) -> None:
        await self._show(LEVEL_ERROR, message)

    async def quick_pick(self, items: list[str], placeholder: str) -> str | None:
        value = await self._request(MSG_QUICK_PICK, {"items": items, "placeholder": placeholder})
        if value is not None and value not in items:
            logger.warning("Client picked %r, which was not offered", value)
            return None
        return value

    async def input_box(self, prompt: str) -> str | None:
        value = await self._request(MSG_INPUT_BOX, {"prompt": prompt})
        return value if isinstance(value, str) else None

    async def confirm(self, message: str, choices: list[str]) -> str | None:
        value = await self._request(MSG_CONFIRM, {"message": message, "choices": choices})
        return value if value in choices else None

    async def with_progress(self, title: str, awaitable: Awaitable) -> Any:
        await self.safe_send({"type": MSG_PROGRESS, "title": title, "done": False})
        try:
            return await awaitable
        finally:
            await self.safe_send({"type": MSG_PROGRESS, "title": title, "done": True})

    async def set_context(self, key: str, value: bool) -> None:
        await self.safe_send({"type": MSG_SET_CONTEXT, "key": key, "value": value})

    def update_status(self, text: str) -> None:
        # Called from the timer tick, which is synchronous
        self._send_in_background({"type": MSG_STATUS, "text": text})

    async def open_external(self, url: str) -> None:
        await self.safe_send({"type": MSG_OPEN_EXTERNAL, "url": url})

    # ------------------------------------------------------------------
    # Document sinks
    # ------------------------------------------------------------------

    async def push_edits(self, uri: str, changes: list[ContentChange]) -> None:
        result = await self._request(
            MSG_APPLY_EDIT, {"uri": uri, "changes": [c.to_dict() for c in changes]}
        )
        if not (isinstance(result, dict) and result.get("applied")):
            raise EditRejectedError(f"Editor rejected edit to {uri}")

    async def save_document(self, uri: str) -> None:
        result = await self._request(MSG_SAVE_DOCUMENT, {"uri": uri})
        if isinstance(result, dict) and result.get("saved") is False:
            raise OSError(f"Editor could not save {uri}")


class EditorSession:
    """Holds all mutable state for a single editor connection.

    Each message type is handled by a ``handle_<type>`` method. Commands run
    as background tasks, one at a time, so the loop keeps reading the
    responses and document events a suspended command is waiting on.
    """

    def __init__(
        self,
        websocket: WebSocket,
        *,
        generator,
        credentials: CredentialStore,
        telemetry: TelemetryClient | None = None,
        runner: CodeRunner | None = None,
    ):
        self.ws = websocket
        self.host = WebSocketHost(websocket)
        self.documents: dict[str, Editor] = {}
        self.controller = PracticeController(
            self.host,
            generator=generator,
            runner=runner or CodeRunner(),
            telemetry=telemetry or TelemetryClient(credentials, notify=self.host.show_error),
            credentials=credentials,
        )
        self._command_lock = asyncio.Lock()
        self._command_tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _error(self, content: str, code: str | None = None) -> None:
        data = {"type": MSG_ERROR, "content": content}
        if code:
            data["code"] = code
        await self.host.safe_send(data)

    def _editor_for(self, msg: dict) -> Editor | None:
        return self.documents.get(msg.get("uri", ""))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._command_tasks.add(task)
        task.add_done_callback(self._command_tasks.discard)
        task.add_done_callback(_log_task_exception)
        return task

    async def _run_serialized(self, label: str, coro_fn) -> None:
        async with self._command_lock:
            try:
                await coro_fn()
            except HostDisconnectedError:
                logger.info("Editor disconnected during %s", label)
            except Exception:
                logger.exception("Command %s failed", label)
                await self._error(f"Command {label} failed.", ERR_COMMAND_FAILED)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def handle_open_document(self, msg: dict) -> None:
        """Open (or focus) a document; the opened one becomes the active editor."""
        uri = msg.get("uri")
        if not uri:
            await self._error("open_document requires a uri.")
            return

        editor = self.documents.get(uri)
        if editor is None:
            document = TextDocument(
                msg.get("text", ""),
                language_id=msg.get("language_id", "plaintext"),
                path=msg.get("path"),
                edit_sink=partial(self.host.push_edits, uri),
                save_sink=partial(self.host.save_document, uri),
            )
            editor = Editor(document)
            self.documents[uri] = editor
            self.controller.watch(document)
            logger.info("Opened %s (%s)", uri, document.language_id)

        self.host.active_editor = editor

    async def handle_close_document(self, msg: dict) -> None:
        editor = self.documents.pop(msg.get("uri", ""), None)
        if editor is None:
            return
        self.controller.unwatch(editor.document)
        if self.host.active_editor is editor:
            self.host.active_editor = None

    async def handle_document_changed(self, msg: dict) -> None:
        editor = self._editor_for(msg)
        if editor is None:
            await self._error("Document is not open.", ERR_UNKNOWN_DOCUMENT)
            return

        # Clients never echo our own edits, so this is always the learner's.
        # The mirror takes it even mid-command; the observer skips it while
        # the guard is held.
        try:
            changes = [ContentChange.from_dict(c) for c in msg.get("changes", [])]
            await editor.document.receive_changes(changes)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Invalid document change from client: %s", e)
            await self._error("Invalid document change.", ERR_INVALID_CHANGE)

    async def handle_selection_changed(self, msg: dict) -> None:
        editor = self._editor_for(msg)
        if editor is None:
            await self._error("Document is not open.", ERR_UNKNOWN_DOCUMENT)
            return
        try:
            editor.selection = Range(_parse_position(msg["start"]), _parse_position(msg["end"]))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Invalid selection from client: %s", e)
            await self._error("Invalid selection.")

    # ------------------------------------------------------------------
    # Commands and responses
    # ------------------------------------------------------------------

    async def handle_command(self, msg: dict) -> None:
        name = msg.get("name")
        if name not in self.controller.command_names():
            await self._error(f"Unknown command: {name}", ERR_UNKNOWN_COMMAND)
            return
        self._spawn(self._run_serialized(name, partial(self.controller.dispatch, name)))

    async def handle_auth_callback(self, msg: dict) -> None:
        uri = msg.get("uri", "")
        self._spawn(self._run_serialized("auth_callback", partial(self.controller.auth_callback, uri)))

    async def handle_response(self, msg: dict) -> None:
        request_id = msg.get("request_id")
        if not request_id or not self.host.resolve(request_id, msg.get("value")):
            logger.warning("Response for unknown request %r", request_id)

    # ------------------------------------------------------------------
    # Main loop & cleanup
    # ------------------------------------------------------------------

    # Dispatch table: message type -> handler method name
    _HANDLERS = {
        MSG_OPEN_DOCUMENT: "handle_open_document",
        MSG_CLOSE_DOCUMENT: "handle_close_document",
        MSG_DOCUMENT_CHANGED: "handle_document_changed",
        MSG_SELECTION_CHANGED: "handle_selection_changed",
        MSG_COMMAND: "handle_command",
        MSG_RESPONSE: "handle_response",
        MSG_AUTH_CALLBACK: "handle_auth_callback",
    }

    async def start(self) -> None:
        await self.host.safe_send({"type": MSG_COMMANDS, "commands": self.controller.command_names()})
        await self.controller.activate()

    async def run(self) -> None:
        """Main message loop; dispatches to handler methods."""
        try:
            while True:
                data = await self.ws.receive_text()

                try:
                    msg = json.loads(data)
                except (json.JSONDecodeError, ValueError) as e:
                    logger.warning("Malformed JSON from client: %s", e)
                    await self.host.safe_send({"type": MSG_ERROR, "content": "Invalid message format."})
                    continue

                msg_type = msg.get("type") if isinstance(msg, dict) else None
                if not msg_type:
                    await self.host.safe_send({"type": MSG_ERROR, "content": "Missing message type."})
                    continue

                handler_name = self._HANDLERS.get(msg_type)
                if not handler_name:
                    await self.host.safe_send({"type": MSG_ERROR, "content": f"Unknown message type: {msg_type}"})
                    continue

                try:
                    await getattr(self, handler_name)(msg)
                except Exception:
                    logger.exception("Unexpected error handling message type=%s", msg_type)
                    await self.host.safe_send({"type": MSG_ERROR, "content": "An internal error occurred."})
        except (WebSocketDisconnect, RuntimeError):
            pass

    async def cleanup(self) -> None:
        """Abort in-flight commands and tear the session down on disconnect."""
        self.host.cancel_pending()
        tasks = list(self._command_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        try:
            await self.controller.deactivate()
        except Exception:
            logger.exception("Controller teardown failed")


# ------------------------------------------------------------------
# FastAPI endpoint: this is what server.py mounts at /ws/editor
# ------------------------------------------------------------------

async def websocket_editor(
    websocket: WebSocket,
    *,
    generator,
    credentials: CredentialStore,
    telemetry: TelemetryClient | None = None,
) -> None:
    """WebSocket endpoint handler for /ws/editor."""
    await websocket.accept()
    session = EditorSession(websocket, generator=generator, credentials=credentials, telemetry=telemetry)
    try:
        await session.start()
        await session.run()
    finally:
        await session.cleanup()
