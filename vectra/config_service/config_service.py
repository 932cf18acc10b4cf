#!/usr/bin/env python3
"""Configuration service for Vectra.

Loads and saves a single JSON/YAML configuration file with validation,
migrations, and environment/CLI overrides for the API server and tools.
"""
from __future__ import annotations

import argparse
import json
import os
import sys
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Tuple

import yaml

from vectra.path_utils import get_config_file, get_storage_root
from vectra.prompt_engine.constraints import parse_rule


class ConfigError(Exception):
    pass


DEFAULT_CONFIG_PATH = str(get_config_file())
DEFAULT_ENV_PREFIX = "VECTRA_"
CURRENT_VERSION = 2


DEFAULT_CONFIG: Dict[str, Any] = {
    "version": CURRENT_VERSION,
    "server": {
        "host": "127.0.0.1",
        "port": 5050,
        "auth_token": "",
    },
    "storage": {
        "root": "",
        "catalog_file": "",
    },
    "access": {
        "admin_override": False,
    },
    "quotas": {
        "free_filter_limit": 3,
        "free_blueprint_limit": 2,
        "free_prompts_per_day": 10,
        "anonymous_prompts_per_day": 3,
    },
    "scoring": {
        "warning_penalty": 5,
        "unknown_key_penalty": 3,
        "constraint_penalty": 5,
        "missing_subject_penalty": 15,
        "short_prompt_chars": 100,
        "short_prompt_penalty": 10,
        "long_prompt_chars": 1500,
        "long_prompt_penalty": 5,
        "repetition_ratio": 0.5,
        "repetition_penalty": 10,
        "quality_keyword_bonus": 5,
        "filter_bonus_per_filter": 2,
        "filter_bonus_cap": 10,
    },
    "lora": {
        "supported_platforms": ["flux", "sdxl", "stable_diffusion", "sd1.5", "sd_1.5"],
        "default_weight": 1.0,
    },
    "conflicts": [
        {
            "rule": "ugc_realism=phone excludes camera_bias=dslr",
            "message": "UGC phone style may conflict with DSLR camera bias",
        },
        {
            "rule": "aesthetic_intensity=extreme excludes ugc_realism=ugc",
            "message": "Extreme aesthetic intensity may override UGC realism",
        },
        {
            "rule": "temporal_style=y2k excludes camera_bias=modern",
            "message": "Y2K temporal style may conflict with modern camera",
        },
    ],
    "logging": {
        "level": "INFO",
        "file": "",
    },
}

# Map flat v0 keys to their structured home
DEPRECATED_FIELD_MAP = {
    "host": "server.host",
    "port": "server.port",
    "auth_token": "server.auth_token",
    "storage_root": "storage.root",
    "admin_override": "access.admin_override",
    "free_filter_limit": "quotas.free_filter_limit",
    "free_blueprint_limit": "quotas.free_blueprint_limit",
    "free_prompts_per_day": "quotas.free_prompts_per_day",
    "log_level": "logging.level",
}

ALLOWED_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
FLOAT_SCORING_FIELDS = ("repetition_ratio",)


@dataclass
class LoadedConfig:
    data: Dict[str, Any]
    warnings: List[str]
    migrated: bool


def coerce_value(value: Any) -> Any:
    if isinstance(value, str):
        lower = value.strip().lower()
        if lower in {"true", "yes", "on"}:
            return True
        if lower in {"false", "no", "off"}:
            return False
        if lower.isdigit():
            try:
                return int(lower)
            except ValueError:
                return value
        try:
            if "." in lower:
                return float(lower)
        except ValueError:
            return value
    return value


def deep_get(data: Dict[str, Any], path: str) -> Any:
    current: Any = data
    for key in path.split("."):
        if not isinstance(current, dict) or key not in current:
            return None
        current = current[key]
    return current


def deep_set(data: Dict[str, Any], path: str, value: Any) -> None:
    current = data
    parts = path.split(".")
    for key in parts[:-1]:
        if key not in current or not isinstance(current[key], dict):
            current[key] = {}
        current = current[key]
    current[parts[-1]] = value


def deep_merge(base: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    merged = deepcopy(base)
    for key, value in incoming.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = deepcopy(value)
    return merged


def parse_env_style(text: str) -> Dict[str, Any]:
    parsed: Dict[str, Any] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        parsed[key.strip()] = coerce_value(value.strip())
    return parsed


def load_raw_config(path: str) -> Tuple[Dict[str, Any], List[str]]:
    warnings: List[str] = []
    if not os.path.exists(path):
        return deepcopy(DEFAULT_CONFIG), warnings

    with open(path, "r", encoding="utf-8") as f:
        text = f.read()

    stripped = text.lstrip()
    if not stripped:
        return deepcopy(DEFAULT_CONFIG), warnings

    if stripped.startswith("{") or stripped.startswith("["):
        data = json.loads(text)
    elif stripped[0] in {"-", ":"} or ":" in stripped.splitlines()[0]:
        data = yaml.safe_load(text) or {}
    else:
        parsed = parse_env_style(text)
        data = {"version": 0, **parsed}
        warnings.append("Loaded legacy env-style configuration; it will be migrated to structured YAML/JSON.")
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be an object/dictionary.")
    return data, warnings


def migrate_v0_to_v1(data: Dict[str, Any], warnings: List[str]) -> Dict[str, Any]:
    migrated = deepcopy(DEFAULT_CONFIG)
    migrated.pop("conflicts", None)
    for key, value in data.items():
        if key == "version":
            continue
        target = DEPRECATED_FIELD_MAP.get(key)
        if not target:
            warnings.append(f"Deprecated or unknown field '{key}' preserved under legacy namespace.")
            migrated.setdefault("legacy", {})[key] = value
            continue
        deep_set(migrated, target, value)
    migrated["version"] = 1
    return migrated


def migrate_v1_to_v2(data: Dict[str, Any], warnings: List[str]) -> Dict[str, Any]:
    # v2 moved the hard-coded filter conflict checks into configuration.
    data = deepcopy(data)
    if "conflicts" not in data:
        data["conflicts"] = deepcopy(DEFAULT_CONFIG["conflicts"])
    data["version"] = 2
    return data


MIGRATIONS = {
    0: migrate_v0_to_v1,
    1: migrate_v1_to_v2,
}


def validate(config: Dict[str, Any], warnings: List[str]) -> Dict[str, Any]:
    config = deep_merge(DEFAULT_CONFIG, config)

    level = str(deep_get(config, "logging.level") or "INFO").upper()
    if level not in ALLOWED_LOG_LEVELS:
        warnings.append(f"Invalid logging.level '{level}' replaced with 'INFO'. Allowed: {sorted(ALLOWED_LOG_LEVELS)}")
        level = "INFO"
    deep_set(config, "logging.level", level)

    def validate_int(path: str, minimum: int = 0) -> None:
        value = deep_get(config, path)
        if isinstance(value, bool) or not isinstance(value, int):
            try:
                value = int(str(value))
            except ValueError:
                default = deep_get(DEFAULT_CONFIG, path)
                warnings.append(f"Field {path} expected integer; reset to {default}.")
                deep_set(config, path, default)
                return
            warnings.append(f"Field {path} expected integer; coerced to {value}.")
        if value < minimum:
            default = deep_get(DEFAULT_CONFIG, path)
            warnings.append(f"Field {path} must be >= {minimum}; reset to {default}.")
            value = default
        deep_set(config, path, value)

    for field in [
        "server.port",
        "quotas.free_filter_limit",
        "quotas.free_blueprint_limit",
        "quotas.free_prompts_per_day",
        "quotas.anonymous_prompts_per_day",
    ] + [f"scoring.{key}" for key in DEFAULT_CONFIG["scoring"] if key not in FLOAT_SCORING_FIELDS]:
        validate_int(field)

    def validate_float(path: str, minimum: float = 0.0) -> None:
        value = deep_get(config, path)
        default = deep_get(DEFAULT_CONFIG, path)
        if isinstance(value, bool):
            value = None
        elif not isinstance(value, (int, float)):
            try:
                value = float(str(value))
            except ValueError:
                value = None
        if value is None:
            warnings.append(f"Field {path} expected a number; reset to {default}.")
            value = default
        elif value < minimum:
            warnings.append(f"Field {path} must be >= {minimum}; reset to {default}.")
            value = default
        deep_set(config, path, float(value))

    for field in [f"scoring.{key}" for key in FLOAT_SCORING_FIELDS] + ["lora.default_weight"]:
        validate_float(field)

    admin_override = deep_get(config, "access.admin_override")
    if not isinstance(admin_override, bool):
        warnings.append(f"Field access.admin_override expected boolean; coerced from '{admin_override}'.")
        deep_set(config, "access.admin_override", bool(coerce_value(str(admin_override))))

    platforms = deep_get(config, "lora.supported_platforms")
    if not isinstance(platforms, list) or not all(isinstance(item, str) for item in platforms):
        warnings.append("Field lora.supported_platforms must be a list of strings; defaults restored.")
        deep_set(config, "lora.supported_platforms", list(DEFAULT_CONFIG["lora"]["supported_platforms"]))

    conflicts = config.get("conflicts")
    if not isinstance(conflicts, list):
        warnings.append("Field conflicts must be a list of rule objects; defaults restored.")
        config["conflicts"] = deepcopy(DEFAULT_CONFIG["conflicts"])
    else:
        kept = []
        for idx, entry in enumerate(conflicts):
            if not isinstance(entry, dict) or not isinstance(entry.get("rule"), str):
                warnings.append(f"conflicts[{idx}] ignored: expected an object with a 'rule' string.")
            elif parse_rule(entry["rule"]) is None:
                warnings.append(f"conflicts[{idx}] ignored: '{entry['rule']}' is not an excludes/requires rule.")
            else:
                kept.append(entry)
        config["conflicts"] = kept

    return config


def migrate(data: Dict[str, Any], warnings: List[str]) -> Tuple[Dict[str, Any], bool]:
    migrated = False
    version = data.get("version", 0)
    while version < CURRENT_VERSION:
        migrate_fn = MIGRATIONS.get(version)
        if not migrate_fn:
            raise ConfigError(f"No migration path from version {version}")
        data = migrate_fn(data, warnings)
        version = data.get("version", version + 1)
        migrated = True
    return data, migrated


def save_config(data: Dict[str, Any], path: str) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    ext = os.path.splitext(path)[1].lower()
    if ext in {".yaml", ".yml"}:
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, sort_keys=False)
    else:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)


def apply_overrides(config: Dict[str, Any], overrides: List[str]) -> None:
    for override in overrides:
        if "=" not in override:
            raise ConfigError(f"Override '{override}' must use key=value format")
        key, raw_value = override.split("=", 1)
        deep_set(config, key.strip(), coerce_value(raw_value.strip()))


def apply_env_overrides(config: Dict[str, Any], prefix: str, warnings: List[str]) -> None:
    if not prefix:
        return
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        remainder = key[len(prefix) :]
        # Only SECTION__FIELD variables map into the config tree; VECTRA_CONFIG_DIR and friends are paths.
        if "__" not in remainder:
            continue
        path = remainder.lower().replace("__", ".")
        warnings.append(f"Environment override {key} applied to {path}")
        deep_set(config, path, coerce_value(value))


def resolve_storage_root(config: Dict[str, Any]) -> str:
    return str(deep_get(config, "storage.root") or get_storage_root())


def load_config(path: str, env_prefix: str = DEFAULT_ENV_PREFIX, overrides: List[str] | None = None) -> LoadedConfig:
    raw, warnings = load_raw_config(path)
    migrated_config, migrated = migrate(raw, warnings)
    apply_env_overrides(migrated_config, env_prefix, warnings)
    if overrides:
        apply_overrides(migrated_config, overrides)
    validated = validate(migrated_config, warnings)
    return LoadedConfig(validated, warnings, migrated)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Vectra configuration service")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to the JSON/YAML config file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    export_parser = subparsers.add_parser("export", help="Print the effective configuration")
    export_parser.add_argument("--format", choices=["json", "yaml"], default="yaml")
    export_parser.add_argument("--env-prefix", default=DEFAULT_ENV_PREFIX, help="Environment variable prefix for overrides")
    export_parser.add_argument("--set", dest="overrides", action="append", default=[], help="Override key=value pairs")
    export_parser.add_argument("--section", help="Only print one top-level section, e.g. quotas or conflicts")

    save_parser = subparsers.add_parser("save", help="Persist configuration changes")
    save_parser.add_argument("--set", dest="overrides", action="append", default=[], help="Updated key=value pairs")

    subparsers.add_parser("migrate", help="Migrate config file to the latest version")
    return parser


def command_export(args: argparse.Namespace) -> int:
    loaded = load_config(args.config, args.env_prefix, args.overrides)
    if loaded.migrated:
        save_config(loaded.data, args.config)
    output = loaded.data
    if args.section:
        if args.section not in output:
            raise ConfigError(f"Unknown config section: {args.section}")
        output = {args.section: output[args.section]}
    if args.format == "json":
        json.dump(output, sys.stdout, indent=2)
        sys.stdout.write("\n")
    else:
        yaml.safe_dump(output, sys.stdout, sort_keys=False)
    for note in loaded.warnings:
        print(f"[warn] {note}", file=sys.stderr)
    return 0


def command_save(args: argparse.Namespace) -> int:
    loaded = load_config(args.config, env_prefix="", overrides=args.overrides)
    save_config(loaded.data, args.config)
    for note in loaded.warnings:
        print(f"[warn] {note}", file=sys.stderr)
    return 0


def command_migrate(args: argparse.Namespace) -> int:
    raw, warnings = load_raw_config(args.config)
    migrated, did_migrate = migrate(raw, warnings)
    validated = validate(migrated, warnings)
    if did_migrate:
        save_config(validated, args.config)
    for note in warnings:
        print(f"[warn] {note}", file=sys.stderr)
    print(json.dumps({"migrated": did_migrate, "version": validated.get("version")}, indent=2))
    return 0


def main(argv: List[str]) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == "export":
            return command_export(args)
        if args.command == "save":
            return command_save(args)
        if args.command == "migrate":
            return command_migrate(args)
    except ConfigError as exc:
        print(f"[error] {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
