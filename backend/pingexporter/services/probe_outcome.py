from dataclasses import dataclass
from enum import Enum
from typing import Optional


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    SEND_ERROR = "send_error"
    MALFORMED_REPLY = "malformed_reply"
    UNREACHABLE = "unreachable"     # ICMP destination unreachable / time exceeded


@dataclass(frozen=True)
class ProbeOutcome:
    kind: OutcomeKind
    rtt: Optional[float] = None     # seconds, success only

    @classmethod
    def success(cls, rtt: float) -> "ProbeOutcome":
        return cls(OutcomeKind.SUCCESS, max(rtt, 0.0))

    @classmethod
    def timeout(cls) -> "ProbeOutcome":
        return cls(OutcomeKind.TIMEOUT)

    @classmethod
    def send_error(cls) -> "ProbeOutcome":
        return cls(OutcomeKind.SEND_ERROR)

    @classmethod
    def malformed_reply(cls) -> "ProbeOutcome":
        return cls(OutcomeKind.MALFORMED_REPLY)

    @classmethod
    def unreachable(cls) -> "ProbeOutcome":
        return cls(OutcomeKind.UNREACHABLE)
