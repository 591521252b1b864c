"""Configuration loader for corectl.

Configuration values are read from several sources, later sources winning:

1. Built-in defaults.
2. ``~/.config/corectl/config.yml`` (or an override path).
3. Environment variables prefixed with ``CORECTL_``.
4. Explicit overrides supplied programmatically (the global CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export CORECTL_CLOUD__BASE_URL=https://cloud-api.example.com
    export CORECTL_WAIT__TIMEOUT=90

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` and handed to each component explicitly; nothing in this
module keeps process-wide state.

The project token issued by the control-plane is a two part string,
``<base64url(JSON)>.<signature>``. When no project ID is configured it is
recovered from the token's ``ProjectID`` claim.
"""
from __future__ import annotations

import base64
import binascii
import json
import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast
from urllib.parse import urlparse

import yaml

ENV_PREFIX = "CORECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

DEFAULT_CLOUD_URL = "https://cloud-api.calyptia.com"
DEFAULT_OPERATOR_INDEX_URL = (
    "https://raw.githubusercontent.com/calyptia/core-images-index/main/operator.index.json"
)
DEFAULT_IMAGE_TAG = "v2.14.0"


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class CloudConfig:
    """Connection settings for the control-plane API."""

    base_url: str = DEFAULT_CLOUD_URL
    token: str | None = None
    project_id: str | None = None
    request_timeout: float | None = None
    verify_tls: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation with the token masked."""
        return {
            "base_url": self.base_url,
            "token": _mask_secret(self.token),
            "project_id": self.project_id,
            "request_timeout": self.request_timeout,
            "verify_tls": self.verify_tls,
        }


@dataclass(frozen=True)
class VersionsConfig:
    """Where published operator versions are looked up."""

    index_url: str = DEFAULT_OPERATOR_INDEX_URL
    cache_file: Path | None = None
    default_tag: str = DEFAULT_IMAGE_TAG

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "index_url": self.index_url,
            "cache_file": str(self.cache_file) if self.cache_file else None,
            "default_tag": self.default_tag,
        }


@dataclass(frozen=True)
class ImagesConfig:
    """Container repositories used by the sync deployment."""

    to_cloud: str = "ghcr.io/calyptia/core-operator/sync-to-cloud"
    from_cloud: str = "ghcr.io/calyptia/core-operator/sync-from-cloud"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"to_cloud": self.to_cloud, "from_cloud": self.from_cloud}


@dataclass(frozen=True)
class KubernetesConfig:
    """Default cluster connection settings (overridable per command)."""

    kubeconfig: Path | None = None
    context: str | None = None
    namespace: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "kubeconfig": str(self.kubeconfig) if self.kubeconfig else None,
            "context": self.context,
            "namespace": self.namespace,
        }


@dataclass(frozen=True)
class WaitConfig:
    """Bounds for the advisory wait-for-ready step."""

    timeout: float = 30.0
    poll_interval: float = 2.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"timeout": self.timeout, "poll_interval": self.poll_interval}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for corectl."""

    config_file: Path
    logs_dir: Path
    cloud: CloudConfig
    versions: VersionsConfig
    images: ImagesConfig
    kubernetes: KubernetesConfig
    wait: WaitConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "cloud": self.cloud.to_dict(),
            "versions": self.versions.to_dict(),
            "images": self.images.to_dict(),
            "kubernetes": self.kubernetes.to_dict(),
            "wait": self.wait.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/corectl/config.yml",
    "logs_dir": "~/.local/state/corectl/logs",
    "cloud": {
        "base_url": DEFAULT_CLOUD_URL,
        "token": None,
        "project_id": None,
        "request_timeout": None,
        "verify_tls": True,
    },
    "versions": {
        "index_url": DEFAULT_OPERATOR_INDEX_URL,
        "cache_file": None,
        "default_tag": DEFAULT_IMAGE_TAG,
    },
    "images": {
        "to_cloud": "ghcr.io/calyptia/core-operator/sync-to-cloud",
        "from_cloud": "ghcr.io/calyptia/core-operator/sync-from-cloud",
    },
    "kubernetes": {
        "kubeconfig": None,
        "context": None,
        "namespace": None,
    },
    "wait": {
        "timeout": 30.0,
        "poll_interval": 2.0,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    section: set(_values.keys())
    for section, _values in DEFAULTS.items()
    if isinstance(_values, Mapping)
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
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

    return _build_app_config(merged)


def decode_project_token(token: str) -> str:
    """Return the project ID embedded in a control-plane project *token*."""
    parts = token.strip().split(".")
    if len(parts) != 2 or not all(parts):
        raise ConfigError("invalid project token")
    payload_part = parts[0]
    padded = payload_part + "=" * (-len(payload_part) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
        payload = json.loads(raw)
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise ConfigError("invalid project token") from exc
    if not isinstance(payload, Mapping):
        raise ConfigError("invalid project token")
    project_id = payload.get("ProjectID")
    if not isinstance(project_id, str) or not project_id:
        raise ConfigError("invalid project token: missing ProjectID")
    return project_id


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


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

    for section, allowed in _SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    cloud = _as_dict(raw.get("cloud"), "cloud")
    base_url = cloud.get("base_url")
    if base_url is not None:
        parsed = urlparse(str(base_url))
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ConfigError(
                f"cloud.base_url must be an http or https URL. Got {base_url!r}."
            )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    logs_dir = _to_path(raw.get("logs_dir"))

    cloud_mapping = _as_dict(raw.get("cloud"), "cloud")
    token = _optional_str(cloud_mapping.get("token"), "cloud.token")
    project_id = _optional_str(cloud_mapping.get("project_id"), "cloud.project_id")
    if token and not project_id:
        project_id = decode_project_token(token)
    timeout_raw = cloud_mapping.get("request_timeout")
    request_timeout = (
        None
        if timeout_raw is None
        else _expect_positive_float(timeout_raw, "cloud.request_timeout", default=30.0)
    )
    cloud = CloudConfig(
        base_url=str(cloud_mapping.get("base_url", DEFAULT_CLOUD_URL)).rstrip("/"),
        token=token,
        project_id=project_id,
        request_timeout=request_timeout,
        verify_tls=_expect_bool(cloud_mapping.get("verify_tls"), "cloud.verify_tls", default=True),
    )

    versions_mapping = _as_dict(raw.get("versions"), "versions")
    cache_value = versions_mapping.get("cache_file")
    versions = VersionsConfig(
        index_url=str(versions_mapping.get("index_url", DEFAULT_OPERATOR_INDEX_URL)),
        cache_file=_to_path(cache_value) if cache_value else None,
        default_tag=str(versions_mapping.get("default_tag", DEFAULT_IMAGE_TAG)),
    )

    images_mapping = _as_dict(raw.get("images"), "images")
    default_images = ImagesConfig()
    images = ImagesConfig(
        to_cloud=str(images_mapping.get("to_cloud", default_images.to_cloud)),
        from_cloud=str(images_mapping.get("from_cloud", default_images.from_cloud)),
    )

    kube_mapping = _as_dict(raw.get("kubernetes"), "kubernetes")
    kubeconfig_value = kube_mapping.get("kubeconfig")
    kubernetes = KubernetesConfig(
        kubeconfig=_to_path(kubeconfig_value) if kubeconfig_value else None,
        context=_optional_str(kube_mapping.get("context"), "kubernetes.context"),
        namespace=_optional_str(kube_mapping.get("namespace"), "kubernetes.namespace"),
    )

    wait_mapping = _as_dict(raw.get("wait"), "wait")
    wait = WaitConfig(
        timeout=_expect_positive_float(wait_mapping.get("timeout"), "wait.timeout", default=30.0),
        poll_interval=_expect_positive_float(
            wait_mapping.get("poll_interval"), "wait.poll_interval", default=2.0
        ),
    )

    return AppConfig(
        config_file=config_file,
        logs_dir=logs_dir,
        cloud=cloud,
        versions=versions,
        images=images,
        kubernetes=kubernetes,
        wait=wait,
    )


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


def _mask_secret(value: str | None) -> str | None:
    if not value:
        return value
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}...{value[-4:]}"


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _optional_str(value: object, label: str) -> str | None:
    if value is None:
        return None
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        text = str(value).strip()
        return text or None
    raise ConfigError(f"Expected {label} to be a string. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


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
    "AppConfig",
    "CloudConfig",
    "ConfigError",
    "ImagesConfig",
    "KubernetesConfig",
    "VersionsConfig",
    "WaitConfig",
    "decode_project_token",
    "load_config",
]
