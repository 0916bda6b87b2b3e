from pydantic import BaseModel, Field
from typing import Optional, Union
from enum import Enum
import ipaddress


class SocketKind(str, Enum):
    DGRAM = "dgram"
    RAW = "raw"


class ResolvedTarget(BaseModel):
    """A target with every default applied. Built once at startup, never mutated."""
    index: int
    address: Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
    netns: Optional[str] = None
    interface: Optional[str] = None
    interval: float = Field(gt=0)
    timeout: float = Field(gt=0)
    socket_kind: SocketKind = SocketKind.DGRAM
    ttl: Optional[int] = Field(default=None, ge=0, le=255)

    model_config = {"frozen": True}

    @property
    def family(self) -> int:
        return self.address.version

    @property
    def label(self) -> str:
        return f"{self.address}@{self.netns}" if self.netns else str(self.address)


class TargetStatusResponse(BaseModel):
    id: int
    target: str
    netns: Optional[str] = None
    interface: Optional[str] = None
    socket_kind: SocketKind
    interval: float
    timeout: float
    ttl: Optional[int] = None
    state: str
    total: int
    successful: int
    wait_sum_seconds: float
