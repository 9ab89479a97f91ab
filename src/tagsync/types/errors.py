"""Error kinds shared by master, slave and the correlation engine.

Every error carries a `kind` string so it can travel inside JSON replies and
heartbeats and be rebuilt on the other side with `error_from_kind`.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base exception for all tagsync error conditions."""

    kind: str = "SyncError"


class Busy(SyncError):
    """A session is already active."""

    kind = "Busy"


class PeerNotReady(SyncError):
    """Readiness probe unanswered or answered negatively."""

    kind = "PeerNotReady"


class LateTrigger(SyncError):
    """Trigger timestamp already elapsed (or too close to now)."""

    kind = "LateTrigger"


class PeerUnresponsive(SyncError):
    """Heartbeat timeout."""

    kind = "PeerUnresponsive"


class TransferFailed(SyncError):
    """File transfer not acknowledged."""

    kind = "TransferFailed"


class DeviceError(SyncError):
    """Command bridge failure or unexpected device reply."""

    kind = "DeviceError"


class DeviceTimeout(DeviceError):
    """No reply from the device within the bounded wait."""

    kind = "DeviceTimeout"


class InvalidInput(SyncError):
    """Malformed or empty timestamp file."""

    kind = "InvalidInput"


class InsufficientData(SyncError):
    """Too few matched offset samples. Reported, not raised, by the engine."""

    kind = "InsufficientData"


class StaleSequence(SyncError):
    """Message sequence number not greater than the last accepted one."""

    kind = "StaleSequence"


class Aborted(SyncError):
    """Acquisition stopped on request before it completed."""

    kind = "Aborted"


ERROR_KINDS: dict[str, type[SyncError]] = {
    cls.kind: cls
    for cls in (
        SyncError,
        Busy,
        PeerNotReady,
        LateTrigger,
        PeerUnresponsive,
        TransferFailed,
        DeviceError,
        DeviceTimeout,
        InvalidInput,
        InsufficientData,
        StaleSequence,
        Aborted,
    )
}


def error_from_kind(kind: str | None, message: str = "") -> SyncError:
    """Rebuild an exception from its kind string (unknown kinds give SyncError)."""
    return ERROR_KINDS.get(kind or "", SyncError)(message)


def error_kind(exc: BaseException) -> str:
    if isinstance(exc, SyncError):
        return exc.kind
    return type(exc).__name__
