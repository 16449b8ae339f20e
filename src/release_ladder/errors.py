"""Release ladder error taxonomy and helpers."""

from __future__ import annotations


class ReleaseLadderError(RuntimeError):
    """Stable, caller-facing error surfaced with a reason code."""

    code = "RELEASE_LADDER_ERROR"

    def __init__(self, detail: str | None = None, *, code: str | None = None) -> None:
        if code is not None:
            self.code = code
        self.detail = detail
        message = f"{self.code}:{detail}" if detail else self.code
        super().__init__(message)


class InvalidConfig(ReleaseLadderError):
    code = "INVALID_CONFIG"


class DuplicateAllocation(ReleaseLadderError):
    code = "DUPLICATE_ALLOCATION"


class AllocationNotFound(ReleaseLadderError):
    code = "ALLOCATION_NOT_FOUND"


class CapacityExceeded(ReleaseLadderError):
    code = "CAPACITY_EXCEEDED"


class AlreadyCompleted(ReleaseLadderError):
    code = "ALREADY_COMPLETED"


class Unauthorized(ReleaseLadderError):
    code = "UNAUTHORIZED"


def reason_code(exc: BaseException | None) -> str:
    if isinstance(exc, ReleaseLadderError):
        return exc.code
    text = str(exc or "").strip()
    if text.isupper():
        return text
    if ":" in text:
        head = text.split(":", 1)[0].strip()
        if head.isupper():
            return head
    return "INTERNAL_ERROR"
