"""YAML configuration loader.

Usage::

    from vaultca.config import load_settings

    settings = load_settings("/etc/vaultca/config.yaml")
    settings.ocsp.response_validity  # typed access

String values of the form ``${VAR}`` or ``${VAR:-default}`` are replaced
with environment variables before the typed settings are built.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

from vaultca.config.settings import VaultcaSettings, build_settings

log = logging.getLogger(__name__)

_ENV_RE = re.compile(
    r"^\$\{([^}:]+?)(?::-(.*))?\}$",
    re.DOTALL,
)

_KNOWN_KEY_TYPES = frozenset({"rsa", "ec"})
_KNOWN_CURVES = frozenset({"P-256", "P-384", "P-521"})
_KNOWN_HASHES = frozenset({"sha256", "sha384", "sha512"})
_KNOWN_LOG_FORMATS = frozenset({"json", "text"})
_MIN_RSA_KEY_SIZE = 2048


class ConfigValidationError(Exception):
    """Raised when cross-field validation finds one or more problems."""

    def __init__(self, errors: list[str]) -> None:
        """Store *errors* and build a human-readable message."""
        self.errors = errors
        body = "\n".join(f"  - {e}" for e in errors)
        super().__init__(f"Configuration validation failed:\n{body}")


# ---------------------------------------------------------------------------
# Environment variable resolution
# ---------------------------------------------------------------------------


def _resolve_value(value: str, path: str) -> str:
    """Replace ``${VAR}`` or ``${VAR:-default}`` with env var value."""
    match = _ENV_RE.match(value)
    if match is None:
        return value
    var_name = match.group(1)
    fallback = match.group(2)
    resolved = os.environ.get(var_name)
    if resolved is not None:
        return resolved
    if fallback is not None:
        return fallback
    raise ConfigValidationError(
        [
            f"Environment variable '${{{var_name}}}' referenced "
            f"at '{path}' is not set and has no default",
        ],
    )


def _resolve_env_vars(
    data: Any,  # noqa: ANN401
    path: str = "",
) -> None:
    """Walk *data* in-place and resolve ``${VAR}``/``${VAR:-default}`` strings."""
    if isinstance(data, dict):
        for key in data:
            child_path = f"{path}.{key}" if path else key
            if isinstance(data[key], str):
                data[key] = _resolve_value(data[key], child_path)
            elif isinstance(data[key], (dict, list)):
                _resolve_env_vars(data[key], child_path)
    elif isinstance(data, list):
        for idx, item in enumerate(data):
            child_path = f"{path}[{idx}]"
            if isinstance(item, str):
                data[idx] = _resolve_value(item, child_path)
            elif isinstance(item, (dict, list)):
                _resolve_env_vars(item, child_path)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _coerce_int(section: dict, key: str, path: str, errors: list[str]) -> None:
    """Env-substituted numbers arrive as strings; convert them in place."""
    value = section.get(key)
    if value is None or isinstance(value, bool):
        return
    if isinstance(value, str):
        try:
            section[key] = int(value)
        except ValueError:
            errors.append(f"{path}.{key} must be an integer (got '{value}')")
            return
    if not isinstance(section[key], int) or section[key] <= 0:
        errors.append(f"{path}.{key} must be a positive integer (got {section[key]!r})")


def validate(data: dict) -> None:
    """Cross-field validation; raises :class:`ConfigValidationError`."""
    errors: list[str] = []

    issuance = data.get("issuance") or {}
    ocsp = data.get("ocsp") or {}
    crl = data.get("crl") or {}
    cache = data.get("revocation_cache") or {}
    logging_cfg = data.get("logging") or {}

    for key in ("root_key_size", "key_size"):
        _coerce_int(issuance, key, "issuance", errors)
    for key in ("response_validity_seconds", "max_post_bytes", "max_get_length"):
        _coerce_int(ocsp, key, "ocsp", errors)
    _coerce_int(crl, "validity_seconds", "crl", errors)
    for key in ("ttl_seconds", "max_entries"):
        _coerce_int(cache, key, "revocation_cache", errors)

    # -- issuance --
    key_type = issuance.get("key_type", "rsa")
    if key_type not in _KNOWN_KEY_TYPES:
        errors.append(f"issuance.key_type must be one of {sorted(_KNOWN_KEY_TYPES)} (got '{key_type}')")
    if key_type == "rsa":
        for key in ("root_key_size", "key_size"):
            size = issuance.get(key)
            if isinstance(size, int) and size < _MIN_RSA_KEY_SIZE:
                errors.append(f"issuance.{key} must be at least {_MIN_RSA_KEY_SIZE} for RSA (got {size})")
    if key_type == "ec" and issuance.get("curve", "P-256") not in _KNOWN_CURVES:
        errors.append(f"issuance.curve must be one of {sorted(_KNOWN_CURVES)}")

    # -- hashes --
    for section, name in ((issuance, "issuance"), (crl, "crl")):
        algo = section.get("hash_algorithm", "sha256")
        if algo not in _KNOWN_HASHES:
            errors.append(f"{name}.hash_algorithm must be one of {sorted(_KNOWN_HASHES)} (got '{algo}')")

    # -- OCSP --
    if ocsp.get("signing_certificate") == "":
        errors.append("ocsp.signing_certificate must not be empty")
    if ocsp.get("issuer_certificate") == "":
        errors.append("ocsp.issuer_certificate must not be empty")

    # -- logging --
    fmt = logging_cfg.get("format", "json")
    if fmt not in _KNOWN_LOG_FORMATS:
        errors.append(f"logging.format must be one of {sorted(_KNOWN_LOG_FORMATS)} (got '{fmt}')")
    level = str(logging_cfg.get("level", "INFO")).upper()
    if not isinstance(logging.getLevelName(level), int):
        errors.append(f"logging.level '{level}' is not a logging level")

    if errors:
        raise ConfigValidationError(errors)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config_data(path: str | Path) -> dict:
    """Read *path* and resolve environment references, without validation."""
    config_path = Path(path)
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as exc:
        msg = f"Cannot read configuration file {config_path}: {exc}"
        raise ConfigValidationError([msg]) from exc

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        msg = f"Configuration file {config_path} is not valid YAML: {exc}"
        raise ConfigValidationError([msg]) from exc

    if data is None:
        data = {}
    if not isinstance(data, dict):
        msg = f"Configuration file {config_path} must contain a mapping at the top level"
        raise ConfigValidationError([msg])

    _resolve_env_vars(data)
    return data


def load_settings(path: str | Path) -> VaultcaSettings:
    """Load, resolve, validate and build the typed settings tree."""
    data = load_config_data(path)
    validate(data)
    log.debug("Loaded configuration from %s", path)
    return build_settings(data)
