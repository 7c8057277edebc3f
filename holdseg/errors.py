"""
Error kinds for the inference pipeline and job table.

Every exception carries a stable ``kind`` string. Workers report
failures to the coordinator as ``(kind, message)`` pairs, and
``error_from_kind`` turns such a pair back into the matching class, so
the same names show up in logs, in job records and in poll responses.
"""

from typing import Dict, Type


class HoldsegError(Exception):
    """Base class for all errors raised by this package."""

    kind = "InternalError"

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": str(self)}


class InputError(HoldsegError):
    """No image payload, an empty one, or a payload that is not bytes."""

    kind = "InputError"


class DecodeError(HoldsegError):
    """Image bytes could not be decoded after sniffing and transcoding."""

    kind = "DecodeError"


class ModelError(HoldsegError):
    """The inference runtime failed to load or to run."""

    kind = "ModelError"


class PoolError(HoldsegError):
    """A worker died with a task assigned, or the pool shut down under it."""

    kind = "PoolError"


class JobTimeoutError(HoldsegError):
    """A job ran past its deadline and its worker was recycled."""

    kind = "Timeout"


class InternalError(HoldsegError):
    """Unexpected state, e.g. a second terminal transition on one job."""

    kind = "InternalError"


class JobNotFoundError(HoldsegError, KeyError):
    """Poll of an unknown or expired job id."""

    kind = "NotFound"

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message.
        return str(self.args[0]) if self.args else ""


_KINDS: Dict[str, Type[HoldsegError]] = {
    cls.kind: cls
    for cls in (
        InputError,
        DecodeError,
        ModelError,
        PoolError,
        JobTimeoutError,
        InternalError,
        JobNotFoundError,
    )
}


def error_from_kind(kind: str, message: str) -> HoldsegError:
    """Rebuild an exception from its wire representation.

    Unknown kinds map to InternalError with the original kind kept in
    the message.
    """
    cls = _KINDS.get(kind)
    if cls is None:
        return InternalError(f"{kind}: {message}")
    return cls(message)
