from pingexporter.schemas.target import SocketKind, ResolvedTarget, TargetStatusResponse
from pingexporter.schemas.config_file import ConfigFile, TargetEntry

__all__ = [
    "SocketKind", "ResolvedTarget", "TargetStatusResponse",
    "ConfigFile", "TargetEntry",
]
