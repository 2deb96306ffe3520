"""Service settings.

Settings come from, in increasing priority:
- defaults of ServiceSettings
- a YAML file (explicit path, or <home>/settings.yaml)
- DAEMONKIT_* environment variables
- command-line options (applied by the program itself)
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml  # type: ignore
from pydantic import ValidationError

from ..contracts.v1 import ServiceSettings
from ..errors import SettingsError
from ..paths import daemonkit_home
from ..util.conv import coerce_bool, coerce_float


ENV_OVERRIDES = {
    "DAEMONKIT_DETACH": "detach",
    "DAEMONKIT_WORKDIR": "working_directory",
    "DAEMONKIT_PID_FILE": "pid_file",
    "DAEMONKIT_LOG_FILE": "log_file",
    "DAEMONKIT_LOG_LEVEL": "log_level",
    "DAEMONKIT_LOG_FORMAT": "log_format",
    "DAEMONKIT_INTERVAL": "interval",
}


def settings_path() -> Path:
    return daemonkit_home() / "settings.yaml"


def load_settings_doc(path: Optional[Path] = None) -> Dict[str, Any]:
    """Raw settings mapping from YAML; {} when the file does not exist."""
    p = path or settings_path()
    if not p.exists():
        if path is not None:
            raise SettingsError(f"settings file not found: {p}")
        return {}
    try:
        doc = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise SettingsError(f"cannot read settings file {p}: {e}") from e
    if not isinstance(doc, dict):
        raise SettingsError(f"settings file {p} must contain a mapping")
    return doc


def apply_env_overrides(doc: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    env = os.environ if environ is None else environ
    out = dict(doc)
    for var, key in ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw is None or not raw.strip():
            continue
        if key == "detach":
            out[key] = coerce_bool(raw, default=bool(out.get(key, False)))
        elif key == "interval":
            out[key] = coerce_float(raw, default=float(out.get(key, 5.0)))
        else:
            out[key] = raw.strip()
    return out


def build_settings(doc: Mapping[str, Any]) -> ServiceSettings:
    try:
        return ServiceSettings.model_validate(dict(doc))
    except ValidationError as e:
        raise SettingsError(f"invalid settings: {e}") from e


def load_settings(path: Optional[Path] = None, *, environ: Optional[Mapping[str, str]] = None) -> ServiceSettings:
    return build_settings(apply_env_overrides(load_settings_doc(path), environ))

