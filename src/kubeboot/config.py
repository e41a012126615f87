"""Configuration loaders for kubeboot.

Two independent sources feed a run:

``Configuration``
    The node's ``kube-env`` file, a flat ``KEY=value`` (or ``KEY: 'value'``)
    document written by the cluster provisioner. It is read exactly once,
    before any stage runs, and is exposed as an immutable mapping of strings.

``BootSettings``
    Tool-level settings that are not part of the node description: filesystem
    roots, the persistent disk, binaries, retry policies and log locations.
    They are resolved from several layers:

    1. Built-in defaults.
    2. ``/etc/kubeboot/config.yml`` (or an override path).
    3. Environment variables prefixed with ``KUBEBOOT_``.
    4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export KUBEBOOT_PATHS__KUBE_HOME=/opt/kubernetes
    export KUBEBOOT_IMAGES__MAX_ATTEMPTS=3

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting settings are exposed as frozen ``dataclasses``.
"""
from __future__ import annotations

import os
import re
import shlex
from collections.abc import Iterator, Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load kubeboot configuration. Install with "
        "`pip install kubeboot` or ensure PyYAML>=6.0 is available."
    ) from exc

from .retry import RetryPolicy

ENV_PREFIX = "KUBEBOOT_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

CLOUD_CONFIG_KEYS = ("PROJECT_ID", "TOKEN_URL", "TOKEN_BODY", "NODE_NETWORK")

EXTERNAL_IP_URL = (
    "http://metadata/computeMetadata/v1/instance/network-interfaces/0/"
    "access-configs/0/external-ip"
)


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails or a required value is absent."""


class ConfigMissingError(ConfigError):
    """Raised when the kube-env file does not exist."""


# ----------------------------------------------------------------------------
# Node configuration (kube-env)


class Configuration(Mapping[str, str]):
    """Immutable view over the variables defined in the kube-env file."""

    __slots__ = ("_values", "source")

    def __init__(self, values: Mapping[str, str], source: Path | None = None) -> None:
        self._values: Mapping[str, str] = MappingProxyType(
            {str(key): str(value) for key, value in values.items()}
        )
        self.source = source

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"Configuration({len(self._values)} keys, source={self.source!s})"

    def value(self, key: str, default: str = "") -> str:
        """Return the value for *key*, or *default* when it is unset or empty."""
        raw = self._values.get(key, "")
        return raw if raw else default

    def is_set(self, key: str) -> bool:
        """Return True when *key* holds a non-empty value."""
        return bool(self._values.get(key))

    def all_set(self, *keys: str) -> bool:
        """Return True when every key in *keys* holds a non-empty value."""
        return all(self.is_set(key) for key in keys)

    def is_true(self, key: str) -> bool:
        """Return True when *key* is exactly ``true``."""
        return self._values.get(key) == "true"

    def require(self, key: str) -> str:
        """Return the value for *key* or raise :class:`ConfigError`."""
        raw = self._values.get(key)
        if not raw:
            raise ConfigError(f"Required configuration value {key} is not set.")
        return raw

    @property
    def cloud_config_enabled(self) -> bool:
        """Return True when the cloud-provider config block is fully specified."""
        return self.all_set(*CLOUD_CONFIG_KEYS)


_SHELL_ASSIGNMENT = re.compile(r"^(?:export\s+)?(?P<key>[A-Za-z_][A-Za-z0-9_]*)=(?P<value>.*)$")
_YAML_ASSIGNMENT = re.compile(r"^(?P<key>[A-Za-z_][A-Za-z0-9_]*)\s*:(?:\s+(?P<value>.*))?$")


def load_environment(path: str | os.PathLike[str]) -> Configuration:
    """Parse the kube-env file at *path* into a :class:`Configuration`."""
    env_path = Path(path)
    if not env_path.exists():
        raise ConfigMissingError(
            f"The {env_path} file does not exist!! Terminate cluster initialization."
        )
    try:
        text = env_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Failed to read {env_path}: {exc}") from exc
    return Configuration(parse_environment(text, label=str(env_path)), source=env_path)


def parse_environment(text: str, *, label: str = "kube-env") -> dict[str, str]:
    """Return the variables defined in *text*.

    Both shell assignments (``KEY=value``, optionally quoted or exported) and
    YAML scalars (``KEY: 'value'``) are accepted. Later definitions win.
    """
    values: dict[str, str] = {}
    for lineno, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        shell_match = _SHELL_ASSIGNMENT.match(line)
        if shell_match:
            values[shell_match["key"]] = _parse_shell_value(
                shell_match["value"], f"{label}:{lineno}"
            )
            continue
        yaml_match = _YAML_ASSIGNMENT.match(line)
        if yaml_match:
            values[yaml_match["key"]] = _parse_yaml_value(
                yaml_match["value"] or "", f"{label}:{lineno}"
            )
            continue
        raise ConfigError(f"Unrecognised line in {label}:{lineno}: {raw_line!r}.")
    return values


def _strip_shell_comment(raw: str) -> str:
    """Drop a trailing comment; `#` only opens one at the start of a word."""
    quote: str | None = None
    escaped = False
    for index, char in enumerate(raw):
        if escaped:
            escaped = False
        elif char == "\\" and quote != "'":
            escaped = True
        elif quote:
            if char == quote:
                quote = None
        elif char in {"'", '"'}:
            quote = char
        elif char == "#" and (index == 0 or raw[index - 1].isspace()):
            return raw[:index]
    return raw


def _parse_shell_value(raw: str, label: str) -> str:
    try:
        parts = shlex.split(_strip_shell_comment(raw))
    except ValueError as exc:
        raise ConfigError(f"Invalid quoting at {label}: {exc}.") from exc
    return " ".join(parts)


def _parse_yaml_value(raw: str, label: str) -> str:
    text = raw.strip()
    if not text:
        return ""
    if text[0] not in {"'", '"'}:
        return text
    try:
        parsed = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML scalar at {label}: {exc}") from exc
    if parsed is None:
        return ""
    if isinstance(parsed, bool):
        return "true" if parsed else "false"
    return str(parsed)


# ----------------------------------------------------------------------------
# Tool settings


@dataclass(frozen=True)
class PathsConfig:
    """Filesystem locations the pipeline reads from and writes to."""

    kube_home: Path
    env_file: Path
    kubernetes_dir: Path
    manifests_dir: Path
    kubelet_dir: Path
    kube_proxy_dir: Path
    srv_dir: Path
    etcd_dir: Path
    log_dir: Path
    defaults_dir: Path
    etc_dir: Path

    @property
    def auth_dir(self) -> Path:
        """Directory holding generated API server credentials."""
        return self.srv_dir / "kubernetes"

    @property
    def sshproxy_dir(self) -> Path:
        """Directory where the API server keeps its SSH tunnel key."""
        return self.srv_dir / "sshproxy"

    @property
    def manifests_source(self) -> Path:
        """Root of the manifest templates shipped with the node image."""
        return self.kube_home / "kube-manifests" / "kubernetes"

    @property
    def gci_manifests(self) -> Path:
        """Directory of control-plane manifest templates."""
        return self.manifests_source / "gci-trusty"

    @property
    def docker_files(self) -> Path:
        """Directory with image tarballs and their ``.docker_tag`` files."""
        return self.kube_home / "kube-docker-files"

    @property
    def addons_dir(self) -> Path:
        """Directory watched by the addon manager."""
        return self.kubernetes_dir / "addons"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "kube_home": str(self.kube_home),
            "env_file": str(self.env_file),
            "kubernetes_dir": str(self.kubernetes_dir),
            "manifests_dir": str(self.manifests_dir),
            "kubelet_dir": str(self.kubelet_dir),
            "kube_proxy_dir": str(self.kube_proxy_dir),
            "srv_dir": str(self.srv_dir),
            "etcd_dir": str(self.etcd_dir),
            "log_dir": str(self.log_dir),
            "defaults_dir": str(self.defaults_dir),
            "etc_dir": str(self.etc_dir),
        }


@dataclass(frozen=True)
class DiskConfig:
    """Persistent disk used for control-plane state."""

    device: Path
    mount_point: Path
    mount_log: Path
    format_tool: str
    format_command: str
    service_user: str

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "device": str(self.device),
            "mount_point": str(self.mount_point),
            "mount_log": str(self.mount_log),
            "format_tool": self.format_tool,
            "format_command": self.format_command,
            "service_user": self.service_user,
        }


@dataclass(frozen=True)
class MetadataConfig:
    """Instance metadata endpoint used to discover the external address."""

    url: str
    retry: RetryPolicy

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"url": self.url, **_retry_to_dict(self.retry)}


@dataclass(frozen=True)
class BinariesConfig:
    """External executables invoked by the pipeline."""

    iptables: str = "iptables"
    docker: str = "docker"
    systemctl: str = "systemctl"
    kubelet: str = "/usr/bin/kubelet"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "iptables": self.iptables,
            "docker": self.docker,
            "systemctl": self.systemctl,
            "kubelet": self.kubelet,
        }


@dataclass(frozen=True)
class BootSettings:
    """Resolved tool settings for kubeboot."""

    config_file: Path
    logs_dir: Path
    templates_dir: Path
    paths: PathsConfig
    disk: DiskConfig
    images: RetryPolicy
    metadata: MetadataConfig
    binaries: BinariesConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the settings."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "templates_dir": str(self.templates_dir),
            "paths": self.paths.to_dict(),
            "disk": self.disk.to_dict(),
            "images": _retry_to_dict(self.images),
            "metadata": self.metadata.to_dict(),
            "binaries": self.binaries.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/kubeboot/config.yml",
    "logs_dir": "/var/log/kubeboot",
    "templates_dir": "/etc/kubeboot/templates",
    "paths": {
        "kube_home": "/home/kubernetes",
        "env_file": None,  # derived from kube_home when absent
        "kubernetes_dir": "/etc/kubernetes",
        "manifests_dir": None,  # derived from kubernetes_dir when absent
        "kubelet_dir": "/var/lib/kubelet",
        "kube_proxy_dir": "/var/lib/kube-proxy",
        "srv_dir": "/etc/srv",
        "etcd_dir": "/var/etcd",
        "log_dir": "/var/log",
        "defaults_dir": "/etc/default",
        "etc_dir": "/etc",
    },
    "disk": {
        "device": "/dev/disk/by-id/google-master-pd",
        "mount_point": "/mnt/disks/master-pd",
        "mount_log": None,  # derived from paths.log_dir when absent
        "format_tool": "/usr/share/google/safe_format_and_mount",
        "format_command": "mkfs.ext4 -F",
        "service_user": "etcd",
    },
    "images": {
        "max_attempts": 5,
        "delay": 5.0,
        "timeout": 30.0,
    },
    "metadata": {
        "url": EXTERNAL_IP_URL,
        "max_attempts": 5,
        "delay": 3.0,
        "timeout": 10.0,
    },
    "binaries": {
        "iptables": "iptables",
        "docker": "docker",
        "systemctl": "systemctl",
        "kubelet": "/usr/bin/kubelet",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], value).keys())
    for section, value in DEFAULTS.items()
    if isinstance(value, Mapping)
}


def load_settings(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> BootSettings:
    """Load and merge settings sources into a :class:`BootSettings`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_settings(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")


def _build_settings(raw: Mapping[str, object]) -> BootSettings:
    paths_map = _as_dict(raw.get("paths"), "paths")
    kube_home = _to_path(paths_map.get("kube_home"))
    kubernetes_dir = _to_path(paths_map.get("kubernetes_dir"))
    log_dir = _to_path(paths_map.get("log_dir"))
    env_file_value = paths_map.get("env_file")
    manifests_value = paths_map.get("manifests_dir")
    paths = PathsConfig(
        kube_home=kube_home,
        env_file=_to_path(env_file_value) if env_file_value else kube_home / "kube-env",
        kubernetes_dir=kubernetes_dir,
        manifests_dir=(
            _to_path(manifests_value) if manifests_value else kubernetes_dir / "manifests"
        ),
        kubelet_dir=_to_path(paths_map.get("kubelet_dir")),
        kube_proxy_dir=_to_path(paths_map.get("kube_proxy_dir")),
        srv_dir=_to_path(paths_map.get("srv_dir")),
        etcd_dir=_to_path(paths_map.get("etcd_dir")),
        log_dir=log_dir,
        defaults_dir=_to_path(paths_map.get("defaults_dir")),
        etc_dir=_to_path(paths_map.get("etc_dir")),
    )

    disk_map = _as_dict(raw.get("disk"), "disk")
    mount_log_value = disk_map.get("mount_log")
    disk = DiskConfig(
        device=_to_path(disk_map.get("device")),
        mount_point=_to_path(disk_map.get("mount_point")),
        mount_log=(
            _to_path(mount_log_value) if mount_log_value else log_dir / "master-pd-mount.log"
        ),
        format_tool=str(disk_map.get("format_tool")),
        format_command=str(disk_map.get("format_command")),
        service_user=str(disk_map.get("service_user")),
    )

    images = _build_retry_policy(_as_dict(raw.get("images"), "images"), "images")

    metadata_map = _as_dict(raw.get("metadata"), "metadata")
    metadata = MetadataConfig(
        url=str(metadata_map.get("url", EXTERNAL_IP_URL)),
        retry=_build_retry_policy(metadata_map, "metadata"),
    )

    binaries_map = _as_dict(raw.get("binaries"), "binaries")
    binaries = BinariesConfig(
        iptables=str(binaries_map.get("iptables", "iptables")),
        docker=str(binaries_map.get("docker", "docker")),
        systemctl=str(binaries_map.get("systemctl", "systemctl")),
        kubelet=str(binaries_map.get("kubelet", "/usr/bin/kubelet")),
    )

    return BootSettings(
        config_file=_to_path(raw.get("config_file")),
        logs_dir=_to_path(raw.get("logs_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        paths=paths,
        disk=disk,
        images=images,
        metadata=metadata,
        binaries=binaries,
    )


def _build_retry_policy(mapping: Mapping[str, object], label: str) -> RetryPolicy:
    attempts = _expect_int(mapping.get("max_attempts"), f"{label}.max_attempts", default=5)
    if attempts < 1:
        raise ConfigError(f"{label}.max_attempts must be at least 1. Got {attempts}.")
    delay_raw = mapping.get("delay")
    delay = 0.0 if delay_raw in (0, "0") else _expect_positive_float(
        delay_raw, f"{label}.delay", default=5.0
    )
    timeout = _expect_positive_float(mapping.get("timeout"), f"{label}.timeout", default=30.0)
    return RetryPolicy(max_attempts=attempts, delay=delay, timeout=timeout)


def _retry_to_dict(policy: RetryPolicy) -> dict[str, object]:
    return {
        "max_attempts": policy.max_attempts,
        "delay": policy.delay,
        "timeout": policy.timeout,
    }


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "BinariesConfig",
    "BootSettings",
    "CLOUD_CONFIG_KEYS",
    "ConfigError",
    "ConfigMissingError",
    "Configuration",
    "DiskConfig",
    "MetadataConfig",
    "PathsConfig",
    "load_environment",
    "load_settings",
    "parse_environment",
]
