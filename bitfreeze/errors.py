# GPL v2 License
# (c) 2024 EvilWarning <...> + contributors

# Backend status codes that mean "password required or wrong".
AUTH_STATUS_CODES = frozenset({10, 255})
CRC_STATUS_CODE = 3


class BitfreezeError(Exception):
    """Base class for every error raised by bitfreeze."""


class AuthenticationError(BitfreezeError):
    pass


class NotFoundError(BitfreezeError):
    pass


class CorruptionError(BitfreezeError):
    def __init__(self, message: str):
        super().__init__(f"{message}. The archive may be damaged, try 'bitfreeze repair'.")


class FatalBackendError(BitfreezeError):
    def __init__(self, message: str, code: int = 1):
        super().__init__(message)
        self.code = code


class PartialFailure(BitfreezeError):
    """Run finished, but some items were skipped or failed."""

    def __init__(self, what: str, count: int):
        super().__init__(f"{what} completed with {count} skipped/failed item(s)")
        self.count = count


class ElevationFailed(BitfreezeError):
    """An elevated sub-operation failed; carries who/what/why for the skip log."""

    def __init__(self, op: str, path: str, reason: str, detail: str = ""):
        super().__init__(f"elevated {op} failed for {path}: {reason}" + (f" ({detail})" if detail else ""))
        self.op = op
        self.path = path
        self.reason = reason
        self.detail = detail


def check_status(code: int, action: str) -> None:
    if code == 0:
        return
    if code in AUTH_STATUS_CODES:
        raise AuthenticationError(
            f"{action}: archive is password protected and no (or a wrong) password was given. "
            "Use -p password or set RAR_PASSWORD."
        )
    if code == CRC_STATUS_CODE:
        raise CorruptionError(f"{action}: backend reported a checksum error")
    raise FatalBackendError(f"{action} failed (exit code: {code})", code)
