"""
Target resolution.
Loads the TOML config file and merges per-target values over the config file
defaults, the CLI defaults and the built-in Settings, producing the closed
list of ResolvedTarget values the dispatcher runs.
"""
import ipaddress
import logging
import tomllib
from pathlib import Path
from typing import Optional, List, Dict, Any, Tuple

from pydantic import ValidationError

from pingexporter.config import Settings
from pingexporter.errors import ConfigError
from pingexporter.schemas.config_file import ConfigFile, TargetEntry
from pingexporter.schemas.target import ResolvedTarget, SocketKind

logger = logging.getLogger(__name__)

# Overridable per target, in the config file top level and on the CLI
MERGED_FIELDS = ("netns", "interface", "interval", "timeout", "type", "ttl")

# Fields that cannot be "none": clearing them falls back to the built-in default
_REQUIRED_FIELDS = ("interval", "timeout", "type")


def load_config_file(path) -> ConfigFile:
    try:
        raw = Path(path).read_bytes()
    except OSError as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e
    try:
        data = tomllib.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"cannot parse config file {path}: {e}") from e
    try:
        config = ConfigFile.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid config file {path}:\n{e}") from e
    logger.info(f"Loaded {len(config.targets)} target(s) from {path}")
    return config


def _explicit_fields(model) -> Dict[str, Any]:
    """Fields the user actually wrote, including ones set to null."""
    return {f: getattr(model, f) for f in MERGED_FIELDS if f in model.model_fields_set}


def _builtin(field: str, settings: Settings):
    if field == "interval":
        return settings.DEFAULT_INTERVAL
    if field == "timeout":
        return settings.DEFAULT_TIMEOUT
    if field == "type":
        try:
            return SocketKind(settings.DEFAULT_SOCKET_KIND)
        except ValueError as e:
            raise ConfigError(f"invalid DEFAULT_SOCKET_KIND: {settings.DEFAULT_SOCKET_KIND!r}") from e
    return None


def _merge(field: str, layers: List[Dict[str, Any]], settings: Settings):
    for layer in layers:
        if field in layer:
            value = layer[field]
            if value is None and field in _REQUIRED_FIELDS:
                return _builtin(field, settings)
            return value
    return _builtin(field, settings)


def resolve_targets(
    config: Optional[ConfigFile],
    cli_defaults: Optional[Dict[str, Any]] = None,
    cli_targets: Optional[List[str]] = None,
    settings: Optional[Settings] = None,
) -> List[ResolvedTarget]:
    """
    Precedence, highest first: per-target value, config file top level, CLI
    default flag, built-in Settings. Config file targets come first, then
    the CLI positional targets. Entries are never deduplicated.
    """
    settings = settings or Settings()
    config = config or ConfigFile()
    # CLI flags that were not given are None and do not participate
    cli_layer = {k: v for k, v in (cli_defaults or {}).items() if k in MERGED_FIELDS and v is not None}
    file_layer = _explicit_fields(config)

    entries: List[TargetEntry] = list(config.targets)
    for raw in cli_targets or []:
        try:
            entries.append(TargetEntry(target=raw))
        except ValidationError as e:
            raise ConfigError(f"invalid target address {raw!r}") from e

    resolved = []
    for index, entry in enumerate(entries):
        layers = [_explicit_fields(entry), file_layer, cli_layer]
        values = {field: _merge(field, layers, settings) for field in MERGED_FIELDS}
        try:
            target = ResolvedTarget(
                index=index,
                address=entry.target,
                netns=values["netns"],
                interface=values["interface"],
                interval=values["interval"],
                timeout=values["timeout"],
                socket_kind=values["type"],
                ttl=values["ttl"],
            )
        except ValidationError as e:
            raise ConfigError(f"invalid settings for target {entry.target}:\n{e}") from e
        resolved.append(target)
    return resolved


def resolve_listen(config: Optional[ConfigFile], cli_listen: Optional[str],
                   settings: Optional[Settings] = None) -> Tuple[str, int]:
    """Config file listen > CLI --listen > LISTEN setting."""
    settings = settings or Settings()
    listen = (config.listen if config else None) or cli_listen or settings.LISTEN
    if not listen:
        raise ConfigError("Please provide the listen address in config or cli arguments")
    return parse_listen(listen)


def parse_listen(value: str) -> Tuple[str, int]:
    """Parse "host:port" or "[v6addr]:port"."""
    host, sep, port = value.rpartition(":")
    if not sep or not host:
        raise ConfigError(f"invalid listen address {value!r}, expected host:port")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
        try:
            ipaddress.IPv6Address(host)
        except ValueError as e:
            raise ConfigError(f"invalid listen address {value!r}") from e
    try:
        port_num = int(port)
    except ValueError as e:
        raise ConfigError(f"invalid listen port in {value!r}") from e
    if not 0 < port_num < 65536:
        raise ConfigError(f"listen port out of range in {value!r}")
    return host, port_num
