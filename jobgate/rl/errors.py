from __future__ import annotations

from typing import Any, Sequence


class InvalidLimitError(ValueError):
    """A limit declaration names an unknown period or a bad cap."""

    def __init__(self, descriptor: Any, reason: str):
        super().__init__(f"invalid restriction {descriptor!r}: {reason}")
        self.descriptor = descriptor
        self.reason = reason


class RollbackError(RuntimeError):
    """Counter rollback did not apply to every key; capacity has leaked."""

    def __init__(self, keys: Sequence[str], errors: Sequence[BaseException]):
        super().__init__(
            f"rollback failed for {len(errors)} command(s) over keys {list(keys)}"
        )
        self.keys = list(keys)
        self.errors = list(errors)


class OverflowPushError(RuntimeError):
    """The deferred job could not be pushed to the overflow queue.

    Raised after the capacity rollback already completed, so the job was
    neither run nor queued and the caller has to retry it.
    """

    def __init__(self, job_class: str, args: Sequence[Any]):
        super().__init__(f"could not defer {job_class} to the overflow queue")
        self.job_class = job_class
        self.job_args = list(args)
