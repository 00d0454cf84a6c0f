"""
Configuration for puller.

Settings come from (lowest to highest precedence) built-in defaults, an optional
JSON config file, environment variables and command-line flags. The result is a
single frozen PullerConfig built once at startup.
"""

import argparse
import json
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

import jsonschema

ENABLE_LABEL = "puller.update.enable"
DEFAULT_INTERVAL = 30

CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "interval": {"type": "integer", "minimum": 1},
        "cleanup": {"type": "boolean"},
        "label_enable": {"type": "boolean"},
        "verbosity": {"enum": ["quiet", "normal", "verbose"]},
        "registry": {
            "type": "object",
            "properties": {
                "url": {"type": "string"},
                "username": {"type": "string"},
                "password": {"type": "string"},
                "tag": {"type": "string"}
            },
            "additionalProperties": False
        },
        "notification_url": {"type": "string"},
        "restart_stopped": {"type": "boolean"}
    },
    "additionalProperties": False
}

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}


class ConfigError(Exception):
    """Invalid or unreadable configuration."""


class Verbosity(Enum):
    QUIET = "quiet"
    NORMAL = "normal"
    VERBOSE = "verbose"


# logging level names accepted for LOG_LEVEL as well
_VERBOSITY_ALIASES = {
    'debug': Verbosity.VERBOSE,
    'info': Verbosity.NORMAL,
    'warning': Verbosity.QUIET,
    'warn': Verbosity.QUIET,
    'error': Verbosity.QUIET,
}


@dataclass(frozen=True)
class RegistryCredential:
    """Registry identity; no username/password means anonymous pulls."""
    url: str = ""
    username: str = ""
    password: str = ""

    @property
    def anonymous(self) -> bool:
        return not (self.username and self.password)

    @property
    def host(self) -> str:
        """Registry URL without scheme or trailing slash, used for reference matching."""
        host = self.url
        for prefix in ("https://", "http://"):
            if host.startswith(prefix):
                host = host[len(prefix):]
        return host.rstrip("/")

    def __repr__(self) -> str:
        # keep the password out of logs
        return f"RegistryCredential(url={self.url!r}, username={self.username!r})"


@dataclass(frozen=True)
class PullerConfig:
    interval: int = DEFAULT_INTERVAL
    cleanup: bool = False
    label_enable: bool = False
    verbosity: Verbosity = Verbosity.NORMAL
    registry: RegistryCredential = RegistryCredential()
    candidate_tag: Optional[str] = None
    notification_url: Optional[str] = None
    restart_stopped: bool = False
    run_once: bool = False
    enable_label: str = ENABLE_LABEL


def is_truthy(value: Optional[str]) -> bool:
    return value is not None and value.strip().lower() in _TRUE_VALUES


def load_config_file(path: Path) -> Dict[str, Any]:
    """Load and validate a JSON config file."""
    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file {path} not found")
    except json.JSONDecodeError as e:
        raise ConfigError(f"Error parsing config file {path}: {e}")

    try:
        jsonschema.validate(data, CONFIG_SCHEMA)
    except jsonschema.ValidationError as e:
        raise ConfigError(f"Configuration validation failed: {e.message}")
    return data


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='puller',
        description='Keep running containers on the newest image available in a registry'
    )
    parser.add_argument(
        '--config',
        help='Path to an optional JSON configuration file (env: PULLER_CONFIG)'
    )
    parser.add_argument(
        '--interval',
        type=int,
        help=f'Check interval in seconds (env: CHECK_INTERVAL, default: {DEFAULT_INTERVAL})'
    )
    parser.add_argument(
        '--cleanup',
        action='store_true',
        default=None,
        help='Prune unreferenced images after a successful update (env: CLEANUP)'
    )
    parser.add_argument(
        '--label-enable',
        action='store_true',
        default=None,
        help=f'Only update containers labelled {ENABLE_LABEL}=true (env: LABEL_ENABLE)'
    )
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument(
        '--verbose',
        action='store_const',
        const=Verbosity.VERBOSE.value,
        dest='verbosity',
        help='Enable verbose logging'
    )
    verbosity.add_argument(
        '--quiet',
        action='store_const',
        const=Verbosity.QUIET.value,
        dest='verbosity',
        help='Only log errors and updates'
    )
    parser.add_argument(
        '--registry-url',
        help='Registry host or URL containers must match (env: REGISTRY_URL)'
    )
    parser.add_argument(
        '--registry-tag',
        help='Additional candidate tag to check for updates (env: REGISTRY_TAG)'
    )
    parser.add_argument(
        '--notification-url',
        help='URL receiving plain-text notifications (env: NOTIFICATION_URL)'
    )
    parser.add_argument(
        '--restart-stopped',
        action='store_true',
        default=None,
        help='Restart exited containers that are already on the newest image (env: RESTART_STOPPED)'
    )
    parser.add_argument(
        '--run-once',
        action='store_true',
        default=None,
        help='Run a single check and exit (env: RUN_ONCE)'
    )
    return parser


def _pick(*values):
    """Return the first value that is not None."""
    for value in values:
        if value is not None:
            return value
    return None


def _env_bool(environ: Mapping[str, str], name: str) -> Optional[bool]:
    raw = environ.get(name)
    if raw is None or raw == '':
        return None
    return is_truthy(raw)


def _env_int(environ: Mapping[str, str], name: str) -> Optional[int]:
    raw = environ.get(name)
    if raw is None or raw == '':
        return None
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got '{raw}'")


def _env_str(environ: Mapping[str, str], name: str) -> Optional[str]:
    raw = environ.get(name)
    return raw if raw else None


def load_config(argv: Optional[Sequence[str]] = None,
                environ: Optional[Mapping[str, str]] = None) -> PullerConfig:
    """Build the process configuration from flags, environment and config file."""
    if environ is None:
        environ = os.environ
    args = build_parser().parse_args(argv)

    config_path = _pick(args.config, _env_str(environ, 'PULLER_CONFIG'))
    file_cfg: Dict[str, Any] = load_config_file(Path(config_path)) if config_path else {}
    file_registry = file_cfg.get('registry', {})

    interval = _pick(args.interval, _env_int(environ, 'CHECK_INTERVAL'),
                     file_cfg.get('interval'), DEFAULT_INTERVAL)
    if interval < 1:
        raise ConfigError(f"Interval must be at least 1 second, got {interval}")

    verbosity_raw = _pick(args.verbosity, _env_str(environ, 'LOG_LEVEL'),
                          file_cfg.get('verbosity'), Verbosity.NORMAL.value)
    key = verbosity_raw.strip().lower()
    try:
        verbosity = _VERBOSITY_ALIASES.get(key) or Verbosity(key)
    except ValueError:
        raise ConfigError(f"Unknown verbosity '{verbosity_raw}' "
                          f"(expected quiet, normal, verbose or a logging level name)")

    registry = RegistryCredential(
        url=_pick(args.registry_url, _env_str(environ, 'REGISTRY_URL'),
                  file_registry.get('url'), ''),
        username=_pick(_env_str(environ, 'REGISTRY_USERNAME'), file_registry.get('username'), ''),
        password=_pick(_env_str(environ, 'REGISTRY_PASSWORD'), file_registry.get('password'), ''),
    )

    return PullerConfig(
        interval=interval,
        cleanup=_pick(args.cleanup, _env_bool(environ, 'CLEANUP'), file_cfg.get('cleanup'), False),
        label_enable=_pick(args.label_enable, _env_bool(environ, 'LABEL_ENABLE'),
                           file_cfg.get('label_enable'), False),
        verbosity=verbosity,
        registry=registry,
        candidate_tag=_pick(args.registry_tag, _env_str(environ, 'REGISTRY_TAG'),
                            file_registry.get('tag')) or None,
        notification_url=_pick(args.notification_url, _env_str(environ, 'NOTIFICATION_URL'),
                               file_cfg.get('notification_url')) or None,
        restart_stopped=_pick(args.restart_stopped, _env_bool(environ, 'RESTART_STOPPED'),
                              file_cfg.get('restart_stopped'), False),
        run_once=_pick(args.run_once, _env_bool(environ, 'RUN_ONCE'), False),
    )
