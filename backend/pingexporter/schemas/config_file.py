from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Union
import ipaddress

from pingexporter.schemas.target import SocketKind

# TOML has no null: an empty string is the explicit "clear this default" value.
_CLEARABLE = ("netns", "interface", "interval", "timeout", "type", "ttl")


def _empty_to_none(v):
    if isinstance(v, str) and v == "":
        return None
    return v


class TargetEntry(BaseModel):
    """
    One [[targets]] table. Fields left out inherit the defaults; fields set to
    null (or "") are recorded in model_fields_set and clear the default instead.
    """
    target: Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
    netns: Optional[str] = None
    interface: Optional[str] = None
    interval: Optional[float] = Field(default=None, gt=0)
    timeout: Optional[float] = Field(default=None, gt=0)
    type: Optional[SocketKind] = None
    ttl: Optional[int] = Field(default=None, ge=0, le=255)

    model_config = {"extra": "forbid"}

    @field_validator(*_CLEARABLE, mode="before")
    @classmethod
    def clear_empty(cls, v):
        return _empty_to_none(v)


class ConfigFile(BaseModel):
    listen: Optional[str] = None
    netns: Optional[str] = None
    interface: Optional[str] = None
    interval: Optional[float] = Field(default=None, gt=0)
    timeout: Optional[float] = Field(default=None, gt=0)
    type: Optional[SocketKind] = None
    ttl: Optional[int] = Field(default=None, ge=0, le=255)
    targets: List[TargetEntry] = []

    model_config = {"extra": "forbid"}

    @field_validator(*_CLEARABLE, mode="before")
    @classmethod
    def clear_empty(cls, v):
        return _empty_to_none(v)

    @field_validator("targets", mode="before")
    @classmethod
    def expand_bare_addresses(cls, v):
        if not isinstance(v, list):
            return v
        return [{"target": item} if isinstance(item, str) else item for item in v]
