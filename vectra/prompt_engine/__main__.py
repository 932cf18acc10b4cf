"""Compile a prompt request offline and print the result as JSON."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Optional, Sequence

from vectra.catalog.presets import load_snapshot
from vectra.config_service.config_service import ConfigError, load_config

from .compiler import CompileContext, compile_prompt
from .services import options_from_config


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--input", required=True, type=Path, help="Path to a compile request JSON file")
    parser.add_argument("--catalog", type=Path, help="Catalog YAML (defaults to the bundled presets)")
    parser.add_argument("--config", type=Path, help="Config file for scoring, conflict rules and LoRA platforms")
    parser.add_argument("--text", action="store_true", help="Print only the compiled prompt text")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    try:
        payload = json.loads(args.input.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise SystemExit(f"Failed to read request: {exc}") from exc

    options = None
    if args.config:
        try:
            options = options_from_config(load_config(str(args.config)).data)
        except ConfigError as exc:
            raise SystemExit(f"Invalid config: {exc}") from exc

    try:
        context = CompileContext.from_dict(payload)
        result = compile_prompt(context, load_snapshot(args.catalog), options)
    except ValueError as exc:
        raise SystemExit(str(exc)) from exc

    if args.text:
        print(result.compiled_prompt)
    else:
        print(json.dumps(result.to_payload(), indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
