"""
Link failure taxonomy

Failures are recovered locally by retry/restart; only retry exhaustion is
reported to the caller as a terminal status.
"""

import enum
from dataclasses import dataclass


class FailureKind(enum.Enum):
    SCAN_TIMEOUT = "scan_timeout"
    SERVICE_NOT_FOUND = "service_not_found"
    CHARACTERISTIC_NOT_FOUND = "characteristic_not_found"
    SUBSCRIPTION_AMBIGUOUS = "subscription_ambiguous"
    SUBSCRIPTION_FAILED = "subscription_failed"
    DATA_SILENCE_TIMEOUT = "data_silence_timeout"
    MALFORMED_FRAME = "malformed_frame"
    TRANSPORT_ERROR = "transport_error"


@dataclass(frozen=True)
class LinkFailure:
    """Most recent failure seen by the link state machine"""
    kind: FailureKind
    message: str
    terminal: bool = False
