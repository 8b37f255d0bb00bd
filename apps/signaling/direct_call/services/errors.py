"""Client-facing signaling errors.

Each error is answered on the channel the offending event came in on; none of
them closes the connection.
"""
from __future__ import annotations


class SignalingError(Exception):
    default_detail: str = "Signaling error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class NameConflict(SignalingError):
    default_detail = "Name is already registered"


class UnknownTarget(SignalingError):
    default_detail = "Target user is not registered"


class NotRegistered(SignalingError):
    default_detail = "Connection is not registered"


class NotInCall(SignalingError):
    default_detail = "No pending call"


class PeerBusy(SignalingError):
    default_detail = "User is busy"


class Malformed(SignalingError):
    default_detail = "Invalid message"


class IceConfigurationError(SignalingError):
    default_detail = "Could not generate ICE configuration"
