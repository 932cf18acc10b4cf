"""Cinematic settings resolution (optics, VFX, style DNA).

- Purpose: turn the studio's cinematic panel selections into ordered prompt
  modifiers and the pseudo-filters reported back in compile metadata.
- Assumptions: the option maps live in the bundled ``cinematic.yaml``; unknown
  option ids are ignored rather than rejected.
- Side effects: reads ``cinematic.yaml`` once per process.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

CINEMATIC_MAPS_PATH = Path(__file__).with_name("cinematic.yaml")
STYLE_DNA_SLOTS = ("brand", "layering", "fit", "outerwear", "footwear", "bottom")


@lru_cache(maxsize=None)
def load_cinematic_maps(path: Path = CINEMATIC_MAPS_PATH) -> Dict[str, object]:
    with Path(path).open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping")
    return data


@dataclass(frozen=True)
class CinematicSettings:
    optics_style: str = ""
    vfx_effects: Tuple[str, ...] = ()
    vfx_intensity: Optional[int] = None
    brand: str = ""
    layering: str = ""
    fit: str = ""
    outerwear: str = ""
    footwear: str = ""
    bottom: str = ""

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> "CinematicSettings":
        if not isinstance(payload, Mapping):
            raise ValueError("cinematicSettings must be an object")
        optics = payload.get("optics") or {}
        vfx = payload.get("vfx") or {}
        style_dna = payload.get("styleDna") or payload.get("style_dna") or {}
        for name, section in (("optics", optics), ("vfx", vfx), ("styleDna", style_dna)):
            if not isinstance(section, Mapping):
                raise ValueError(f"cinematicSettings.{name} must be an object")

        effects = vfx.get("effects") or []
        if not isinstance(effects, list) or not all(isinstance(item, str) for item in effects):
            raise ValueError("cinematicSettings.vfx.effects must be a list of strings")
        intensity = vfx.get("intensity")
        if intensity is not None and (isinstance(intensity, bool) or not isinstance(intensity, (int, float))):
            raise ValueError("cinematicSettings.vfx.intensity must be a number")

        return cls(
            optics_style=str(optics.get("style") or ""),
            vfx_effects=tuple(effects),
            vfx_intensity=int(intensity) if intensity is not None else None,
            **{slot: str(style_dna.get(slot) or "") for slot in STYLE_DNA_SLOTS},
        )

    def to_dict(self) -> Dict[str, object]:
        vfx: Dict[str, object] = {"effects": list(self.vfx_effects)}
        if self.vfx_intensity is not None:
            vfx["intensity"] = self.vfx_intensity
        return {
            "optics": {"style": self.optics_style},
            "vfx": vfx,
            "styleDna": {slot: getattr(self, slot) for slot in STYLE_DNA_SLOTS},
        }


def intensity_prefix(intensity: int, maps: Optional[Mapping[str, object]] = None) -> str:
    maps = maps or load_cinematic_maps()
    for band in (maps.get("intensity") or {}).get("bands", []):
        if "min" in band and intensity >= band["min"]:
            return band["prefix"]
        if "max" in band and intensity <= band["max"]:
            return band["prefix"]
    return ""


def resolve_modifiers(
    settings: Optional[CinematicSettings], maps: Optional[Mapping[str, object]] = None
) -> Tuple[List[str], Dict[str, str]]:
    """Return ``(modifiers, pseudo_filters)`` in optics, VFX, style DNA order."""

    if settings is None:
        return [], {}
    maps = maps or load_cinematic_maps()
    modifiers: List[str] = []
    resolved: Dict[str, str] = {}

    optics = maps.get("optics") or {}
    if settings.optics_style in optics:
        modifiers.append(optics[settings.optics_style])
        resolved["camera_style"] = settings.optics_style

    vfx = maps.get("vfx") or {}
    intensity = settings.vfx_intensity
    if intensity is None:
        intensity = int((maps.get("intensity") or {}).get("default", 50))
    prefix = intensity_prefix(intensity, maps)
    for effect in settings.vfx_effects:
        if effect == "off":
            continue
        if effect not in vfx:
            logger.debug("Ignoring unknown VFX effect %s", effect)
            continue
        modifiers.append(f"{prefix}{vfx[effect]}")
        resolved[f"vfx_{effect}"] = str(intensity)

    style_dna = maps.get("style_dna") or {}
    neutral = maps.get("neutral") or {}
    for slot in STYLE_DNA_SLOTS:
        value = getattr(settings, slot)
        if not value or value == neutral.get(slot):
            continue
        fragment = (style_dna.get(slot) or {}).get(value)
        if fragment:
            modifiers.append(fragment)
            resolved[f"style_{slot}"] = value

    return modifiers, resolved
