"""Exception types shared by the inbound and outbound halves of the bridge."""
from __future__ import annotations

# JSON-RPC 2.0 reserved codes
SERVER_ERROR = -32000
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602


class BridgeError(Exception):
    """Base class for errors reported back to the caller."""

    code = SERVER_ERROR


class InvalidParamsError(BridgeError):
    """The request is missing a target, a payload, or has malformed params."""

    code = INVALID_PARAMS


class MethodNotFoundError(BridgeError):
    code = METHOD_NOT_FOUND

    def __init__(self, method: object) -> None:
        super().__init__(f"Method not found: {method}")
        self.method = method


class AttachmentPolicyError(BridgeError):
    """An outbound attachment was refused by the containment policy."""


class DeliveryError(BridgeError):
    """Every delivery strategy failed. Chained to the last failure."""

    def __init__(self, message: str, last_error: BaseException | None = None) -> None:
        super().__init__(message)
        self.last_error = last_error


class StoreQueryError(Exception):
    """The message store could not be queried."""


class CommandError(Exception):
    """An external command exited unsuccessfully."""

    def __init__(self, argv: list[str], returncode: int | None, stderr: str = "") -> None:
        program = argv[0] if argv else "<unknown>"
        detail = stderr.strip()
        message = f"{program} exited with status {returncode}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.argv = argv
        self.returncode = returncode
        self.stderr = stderr


class CommandTimeoutError(CommandError):
    def __init__(self, argv: list[str], timeout: float) -> None:
        Exception.__init__(self, f"{argv[0] if argv else '<unknown>'} timed out after {timeout:g}s")
        self.argv = argv
        self.returncode = None
        self.stderr = ""
        self.timeout = timeout


class StrategiesExhaustedError(Exception):
    """Raised when no strategy in an ordered chain succeeded."""

    def __init__(self, attempted: list[str], last_error: BaseException | None) -> None:
        names = ", ".join(attempted) or "none"
        super().__init__(f"all strategies failed ({names}): {last_error}")
        self.attempted = attempted
        self.last_error = last_error


__all__ = [
    "AttachmentPolicyError",
    "BridgeError",
    "CommandError",
    "CommandTimeoutError",
    "DeliveryError",
    "INVALID_PARAMS",
    "InvalidParamsError",
    "METHOD_NOT_FOUND",
    "MethodNotFoundError",
    "SERVER_ERROR",
    "StoreQueryError",
    "StrategiesExhaustedError",
]
