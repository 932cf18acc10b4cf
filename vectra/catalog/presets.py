"""Bundled reference catalog (profiles, blueprints, blocks, filters)."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

import yaml

from vectra.prompt_engine.catalog import CatalogSnapshot

PRESETS_PATH = Path(__file__).with_name("presets.yaml")
SECTIONS = ("profiles", "blueprints", "blocks", "filters")


def load_presets(path: Optional[Path] = None) -> Dict[str, List[Dict[str, object]]]:
    """Load a catalog document; every section is optional and defaults to ``[]``."""

    path = Path(path) if path else PRESETS_PATH
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping of catalog sections")
    presets: Dict[str, List[Dict[str, object]]] = {}
    for section in SECTIONS:
        entries = data.get(section) or []
        if not isinstance(entries, list):
            raise ValueError(f"{path}: {section} must be a list")
        presets[section] = entries
    return presets


def load_snapshot(path: Optional[Path] = None) -> CatalogSnapshot:
    presets = load_presets(path)
    return CatalogSnapshot.build(**presets)
