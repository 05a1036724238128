"""TOML-based cloud and template configuration.

Loads ~/.skyfleet/defaults.toml (global) and skyfleet.toml (project),
merges them, and resolves named clouds into ``CloudConfig`` instances.

Example skyfleet.toml::

    [clouds.ci]
    region = "eu-west-1"
    instance_cap = 10
    server_url = "https://ci.example.com/"

    [[clouds.ci.templates]]
    description = "linux"
    image_id = "ami-0123456789abcdef0"
    labels = "linux docker"
    instance_cap = 4
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any

from skyfleet.cloud.config import CloudConfig
from skyfleet.model import NodeMode, Template, parse_instance_cap, parse_labels

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".skyfleet" / "defaults.toml"
PROJECT_CONFIG_NAME = "skyfleet.toml"

_CLOUD_TYPES = frozenset({"ec2"})


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    with path.open("rb") as f:
        return tomllib.load(f)


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    project_cfg = _read_toml(project_path)

    merged = _deep_merge(global_cfg, project_cfg)
    merged.setdefault("clouds", {})
    return merged


def _build_template(cloud: str, raw: RawConfig) -> Template:
    raw = dict(raw)
    for required in ("description", "image_id"):
        if required not in raw:
            raise ValueError(f"Template in cloud '{cloud}' missing '{required}' field")

    if "labels" in raw:
        raw["labels"] = parse_labels(raw["labels"])
    if "mode" in raw:
        raw["mode"] = NodeMode(raw["mode"])
    if "instance_cap" in raw:
        raw["instance_cap"] = parse_instance_cap(raw["instance_cap"])
    if "security_group_ids" in raw:
        raw["security_group_ids"] = tuple(raw["security_group_ids"])
    return Template(**raw)


def build_cloud(name: str, raw: RawConfig) -> CloudConfig:
    raw = dict(raw)
    cloud_type = raw.pop("type", "ec2")
    if cloud_type not in _CLOUD_TYPES:
        raise ValueError(
            f"Unknown cloud type '{cloud_type}'. Valid: {', '.join(sorted(_CLOUD_TYPES))}"
        )

    templates = tuple(_build_template(name, t) for t in raw.pop("templates", ()))
    descriptions = [t.description for t in templates]
    duplicates = sorted({d for d in descriptions if descriptions.count(d) > 1})
    if duplicates:
        raise ValueError(f"Cloud '{name}' has duplicate templates: {', '.join(duplicates)}")

    if "instance_cap" in raw:
        raw["instance_cap"] = parse_instance_cap(raw["instance_cap"])
    return CloudConfig(name=name, templates=templates, **raw)


def resolve_cloud(
    name: str,
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> CloudConfig:
    config = load_config(project_dir=project_dir, global_path=global_path)

    clouds = config["clouds"]
    if name not in clouds:
        raise KeyError(f"Cloud '{name}' not found. Available: {', '.join(clouds) or 'none'}")
    return build_cloud(name, clouds[name])
