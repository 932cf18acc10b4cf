"""Gemini Gems optimization presets.

- Purpose: load the bundled gem manifests and apply them to a compiled prompt,
  producing the enhanced prompt text plus a separate ``GemOptimization`` payload
  (negative prompt, sampler hints, quality checklist).
- Assumptions: manifests live in ``gems.yaml`` next to this module; gem order in a
  request is significant for prefixes, suffixes and modifier lines.
- Side effects: reads ``gems.yaml`` once per process.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import yaml

logger = logging.getLogger(__name__)

GEMS_PATH = Path(__file__).with_name("gems.yaml")
GEM_CATEGORIES = {"facial_biometrics", "identity_preservation", "ugc_realism"}


def _dedupe(values: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(value for value in values if value))


def _range(value: object, name: str) -> Tuple[float, float]:
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise ValueError(f"{name} must be a [min, max] pair")
    low, high = float(value[0]), float(value[1])
    if low > high:
        raise ValueError(f"{name} min must not exceed max")
    return low, high


@dataclass(frozen=True)
class GemManifest:
    id: str
    name: str
    description: str
    category: str
    priority: int = 1
    prefix: str = ""
    suffix: str = ""
    negative_prompt: str = ""
    quality_modifiers: Tuple[str, ...] = ()
    fidelity_modifiers: Tuple[str, ...] = ()
    anatomy_modifiers: Tuple[str, ...] = ()
    cfg_scale_range: Tuple[float, float] = (7.0, 8.0)
    denoising_strength_range: Tuple[float, float] = (0.2, 0.3)
    recommended_samplers: Tuple[str, ...] = ()
    control_net_weights: Mapping[str, float] = field(default_factory=dict)
    quality_checks: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> "GemManifest":
        gem_id = payload.get("id")
        if not isinstance(gem_id, str) or not gem_id:
            raise ValueError("gem id is required")
        category = str(payload.get("category") or "")
        if category not in GEM_CATEGORIES:
            raise ValueError(f"gem {gem_id}: category must be one of {sorted(GEM_CATEGORIES)}")
        technical = payload.get("technical") or {}
        return cls(
            id=gem_id,
            name=str(payload.get("name") or gem_id),
            description=str(payload.get("description") or ""),
            category=category,
            priority=int(payload.get("priority", 1)),
            prefix=str(payload.get("prefix") or "").strip(),
            suffix=str(payload.get("suffix") or "").strip(),
            negative_prompt=" ".join(str(payload.get("negative_prompt") or "").split()),
            quality_modifiers=tuple(payload.get("quality_modifiers") or ()),
            fidelity_modifiers=tuple(payload.get("fidelity_modifiers") or ()),
            anatomy_modifiers=tuple(payload.get("anatomy_modifiers") or ()),
            cfg_scale_range=_range(technical.get("cfg_scale_range", (7, 8)), f"{gem_id}.cfg_scale_range"),
            denoising_strength_range=_range(
                technical.get("denoising_strength_range", (0.2, 0.3)), f"{gem_id}.denoising_strength_range"
            ),
            recommended_samplers=tuple(technical.get("recommended_samplers") or ()),
            control_net_weights={str(k): float(v) for k, v in (technical.get("control_net_weights") or {}).items()},
            quality_checks=tuple(payload.get("quality_checks") or ()),
        )

    def summary(self) -> Dict[str, object]:
        return {"id": self.id, "name": self.name, "description": self.description, "category": self.category}

    def to_dict(self) -> Dict[str, object]:
        return {
            **self.summary(),
            "priority": self.priority,
            "promptEnhancements": {
                "prefix": self.prefix,
                "suffix": self.suffix,
                "negativePrompt": self.negative_prompt,
                "qualityModifiers": list(self.quality_modifiers),
                "fidelityModifiers": list(self.fidelity_modifiers),
                "anatomyModifiers": list(self.anatomy_modifiers),
            },
            "technicalParams": {
                "cfgScaleRange": list(self.cfg_scale_range),
                "denoisingStrengthRange": list(self.denoising_strength_range),
                "recommendedSamplers": list(self.recommended_samplers),
                "controlNetWeights": dict(self.control_net_weights),
            },
            "qualityChecks": list(self.quality_checks),
        }


@dataclass
class GemOptimization:
    """Auxiliary payload returned next to (never inside) the compiled prompt."""

    applied_gems: List[str] = field(default_factory=list)
    negative_prompt: str = ""
    cfg_scale: float = 7.5
    denoising_strength: float = 0.25
    sampler: str = "DPM++ 2M Karras"
    control_net_weights: Dict[str, float] = field(default_factory=dict)
    quality_checklist: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "appliedGems": list(self.applied_gems),
            "negativePrompt": self.negative_prompt,
            "technicalRecommendations": {
                "cfgScale": self.cfg_scale,
                "denoisingStrength": self.denoising_strength,
                "sampler": self.sampler,
                "controlNetWeights": dict(self.control_net_weights),
            },
            "qualityChecklist": list(self.quality_checklist),
        }


@dataclass(frozen=True)
class GemLibrary:
    gems: Mapping[str, GemManifest]
    defaults: Mapping[str, object]

    def get(self, gem_id: str) -> Optional[GemManifest]:
        return self.gems.get(gem_id)

    def resolve(self, gem_ids: Sequence[str]) -> Tuple[List[GemManifest], List[str]]:
        """Split ``gem_ids`` into known manifests (request order) and unknown ids."""

        known: List[GemManifest] = []
        unknown: List[str] = []
        for gem_id in gem_ids:
            gem = self.gems.get(gem_id)
            if gem is None:
                unknown.append(gem_id)
            else:
                known.append(gem)
        return known, unknown


@lru_cache(maxsize=None)
def load_gem_library(path: Path = GEMS_PATH) -> GemLibrary:
    with Path(path).open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    gems: Dict[str, GemManifest] = {}
    for entry in data.get("gems") or []:
        gem = GemManifest.from_dict(entry)
        if gem.id in gems:
            raise ValueError(f"Duplicate gem id: {gem.id}")
        gems[gem.id] = gem
    logger.debug("Loaded %d gem manifests from %s", len(gems), path)
    return GemLibrary(gems=gems, defaults=data.get("defaults") or {})


def get_available_gems(library: Optional[GemLibrary] = None) -> List[Dict[str, object]]:
    library = library or load_gem_library()
    return [gem.summary() for gem in library.gems.values()]


def get_gem(gem_id: str, library: Optional[GemLibrary] = None) -> Optional[GemManifest]:
    library = library or load_gem_library()
    return library.get(gem_id)


def enhance_prompt(prompt: str, gems: Sequence[GemManifest], library: Optional[GemLibrary] = None) -> str:
    """Wrap ``prompt`` with the prefixes, modifier lines and suffixes of ``gems``."""

    if not gems:
        return prompt
    library = library or load_gem_library()
    limits = library.defaults.get("limits") or {}

    parts: List[str] = []
    prefixes = [gem.prefix for gem in gems if gem.prefix]
    if prefixes:
        parts.append("\n\n".join(prefixes))
    parts.append(prompt)

    for label, attribute, default_limit in (
        ("Quality", "quality_modifiers", 8),
        ("Fidelity", "fidelity_modifiers", 6),
        ("Anatomy", "anatomy_modifiers", 6),
    ):
        limit = int(limits.get(label.lower(), default_limit))
        values = _dedupe(value for gem in gems for value in getattr(gem, attribute))[:limit]
        if values:
            parts.append(f"{label}: {', '.join(values)}")

    suffixes = [gem.suffix for gem in gems if gem.suffix]
    if suffixes:
        parts.append("\n\n".join(suffixes))
    return "\n\n".join(parts)


def build_optimization(
    gems: Sequence[GemManifest], restrictions: str = "", library: Optional[GemLibrary] = None
) -> GemOptimization:
    """Merge the technical hints of ``gems``.

    cfg scale and denoising strength average the midpoint of each gem's range
    together with the library default; ControlNet weights take the maximum.
    """

    library = library or load_gem_library()
    defaults = library.defaults
    cfg_total = float(defaults.get("cfg_scale", 7.5))
    denoise_total = float(defaults.get("denoising_strength", 0.25))
    weights = {str(k): float(v) for k, v in (defaults.get("control_net_weights") or {}).items()}

    for gem in gems:
        cfg_total += sum(gem.cfg_scale_range) / 2
        denoise_total += sum(gem.denoising_strength_range) / 2
        for name, weight in gem.control_net_weights.items():
            weights[name] = max(weights.get(name, 0.0), weight)

    divisor = len(gems) + 1 if gems else 1
    negatives = _dedupe([restrictions.strip()] + [gem.negative_prompt for gem in gems])
    return GemOptimization(
        applied_gems=[gem.name for gem in gems],
        negative_prompt=", ".join(negatives),
        cfg_scale=round(cfg_total / divisor, 1),
        denoising_strength=round(denoise_total / divisor, 2),
        sampler=str(defaults.get("sampler", "DPM++ 2M Karras")),
        control_net_weights=weights,
        quality_checklist=_dedupe(check for gem in gems for check in gem.quality_checks),
    )
