"""Editor-bridge protocol constants: message types and error codes.

Pure data module -- no imports, no logic. Safe to import from any codeforge
module without risk of circular dependencies.

Requests the server needs answered (pickers, edits, saves) carry a
``request_id``; the client answers with a ``response`` message carrying the
same id and a ``value``. The client acknowledges ``apply_edit`` only after
applying it and does not report those edits back as ``document_changed``.
"""

# ── Client -> Server message types ────────────────────────────────────

MSG_OPEN_DOCUMENT = "open_document"
MSG_CLOSE_DOCUMENT = "close_document"
MSG_DOCUMENT_CHANGED = "document_changed"
MSG_SELECTION_CHANGED = "selection_changed"
MSG_COMMAND = "command"
MSG_RESPONSE = "response"
MSG_AUTH_CALLBACK = "auth_callback"

# ── Server -> Client message types ────────────────────────────────────

MSG_APPLY_EDIT = "apply_edit"
MSG_SAVE_DOCUMENT = "save_document"
MSG_QUICK_PICK = "quick_pick"
MSG_INPUT_BOX = "input_box"
MSG_CONFIRM = "confirm"
MSG_SHOW_MESSAGE = "show_message"
MSG_SET_CONTEXT = "set_context"
MSG_STATUS = "status"
MSG_PROGRESS = "progress"
MSG_OPEN_EXTERNAL = "open_external"
MSG_COMMANDS = "commands"
MSG_ERROR = "error"

# ── show_message levels ───────────────────────────────────────────────

LEVEL_INFO = "info"
LEVEL_WARNING = "warning"
LEVEL_ERROR = "error"

# ── Error codes (machine-readable, included in MSG_ERROR messages) ────

ERR_UNKNOWN_DOCUMENT = "UNKNOWN_DOCUMENT"
ERR_UNKNOWN_COMMAND = "UNKNOWN_COMMAND"
ERR_INVALID_CHANGE = "INVALID_CHANGE"
ERR_COMMAND_FAILED = "COMMAND_FAILED"
