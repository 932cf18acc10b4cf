"""Prompt compiler: blueprint blocks + filters -> compiled prompt.

``compile_prompt`` is a pure function of a per-request :class:`CompileContext`
and an immutable :class:`CatalogSnapshot`. It never raises for data-quality
issues (unknown keys, constraint violations); those become warnings. Only
references it cannot resolve at all (profile, blueprint) raise
:class:`CompileError`.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .catalog import CatalogSnapshot
from .character_pack import DEFAULT_LORA_PLATFORMS, build_character_pack, platform_supports_lora
from .cinematic import CinematicSettings, resolve_modifiers
from .constraints import ConstraintRule, evaluate, split_constraints
from .gems import GemLibrary, build_optimization, load_gem_library
from .models import Block, CompileInput, CompileResult, LoraActivation
from .scoring import ScoringPolicy, score_prompt
from .transforms import apply_transforms, build_pipeline

logger = logging.getLogger(__name__)

SYSTEM_PROMPT_CORE = """You are a creative visual prompt generator. Follow these guidelines:

QUALITY STANDARDS:
- Be specific and detailed in visual descriptions
- Use concrete, observable details rather than abstract concepts
- Include lighting, atmosphere, and mood when relevant
- Specify camera angles and compositional elements
- Reference real-world materials, textures, and techniques

STYLE GUIDELINES:
- Maintain consistency in aesthetic choices
- Layer details from general to specific
- Use professional terminology appropriate to the medium
- Avoid conflicting or contradictory instructions
- Balance creativity with technical precision

OUTPUT FORMAT:
- Write in clear, comma-separated phrases
- Progress from subject to environment to style
- End with technical parameters when applicable
- Keep total length appropriate for the target model"""

_PLACEHOLDER = re.compile(r"\{([A-Za-z0-9_]+)\}")


class CompileError(ValueError):
    """Raised when a profile or blueprint reference cannot be resolved."""


@dataclass(frozen=True)
class CompileContext:
    """Everything one compile call needs besides the catalog."""

    input: CompileInput
    active_lora: Optional[LoraActivation] = None
    cinematic: Optional[CinematicSettings] = None
    gems: Tuple[str, ...] = ()
    target_platform: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> "CompileContext":
        """Build a context from a request-shaped mapping (offline CLI requests)."""

        lora = payload.get("lora")
        cinematic = payload.get("cinematicSettings")
        gems = payload.get("geminiGems") or []
        if not isinstance(gems, list) or not all(isinstance(item, str) for item in gems):
            raise ValueError("geminiGems must be a list of strings")
        target_platform = payload.get("targetPlatform")
        if target_platform is not None and not isinstance(target_platform, str):
            raise ValueError("targetPlatform must be a string")
        return cls(
            input=CompileInput.from_dict(payload),
            active_lora=LoraActivation.from_dict(lora) if lora else None,
            cinematic=CinematicSettings.from_dict(cinematic) if cinematic else None,
            gems=tuple(gems),
            target_platform=target_platform or None,
        )


@dataclass(frozen=True)
class CompileOptions:
    """Deployment-level knobs, usually built from the service configuration."""

    scoring: ScoringPolicy = field(default_factory=ScoringPolicy)
    conflict_rules: Tuple[ConstraintRule, ...] = ()
    lora_platforms: Tuple[str, ...] = DEFAULT_LORA_PLATFORMS
    gem_library: Optional[GemLibrary] = None
    cinematic_maps: Optional[Mapping[str, object]] = None


def generate_seed(compile_input: CompileInput) -> str:
    """Return the request seed, deriving a stable one from the inputs when absent."""

    if compile_input.seed:
        return compile_input.seed
    canonical = json.dumps(
        {
            "profile": compile_input.profile_id,
            "blueprint": compile_input.blueprint_id,
            "filters": dict(compile_input.filters),
            "subject": compile_input.subject,
        },
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:8]


def _tidy(text: str) -> str:
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\s+,", ",", text)
    text = re.sub(r",(\s*,)+", ",", text)
    return text.strip(" ,\t\n")


def _render(template: str, values: Mapping[str, str], consumed: set) -> str:
    def _substitute(match: "re.Match[str]") -> str:
        name = match.group(1)
        value = values.get(name, "")
        if value:
            consumed.add(name)
        return value

    return _tidy(_PLACEHOLDER.sub(_substitute, template))


def _resolve_filters(
    filters: Mapping[str, str], catalog: CatalogSnapshot, warnings: List[str]
) -> Tuple[Dict[str, str], List[str]]:
    """Return ``(effects_by_key, unknown_keys)`` preserving request order."""

    effects: Dict[str, str] = {}
    unknown: List[str] = []
    for key, value in filters.items():
        definition = catalog.filters.get(key)
        if definition is None:
            warnings.append(f"Unknown filter: {key}")
            unknown.append(key)
            continue
        effect = definition.effect.get(value)
        if effect is None:
            warnings.append(f"Unknown value '{value}' for filter '{key}'")
            unknown.append(key)
            continue
        if effect:
            effects[key] = effect
    return effects, unknown


def _apply_profile_rules(prompt: str, patterns: Sequence[str], max_length: int, warnings: List[str]) -> str:
    removed = False
    for pattern in patterns:
        if pattern and pattern.lower() in prompt.lower():
            warnings.append(f'Contains forbidden pattern: "{pattern}"')
            prompt = re.sub(re.escape(pattern), "", prompt, flags=re.IGNORECASE)
            removed = True
    if removed:
        prompt = "\n\n".join(filter(None, (_tidy(section) for section in prompt.split("\n\n"))))
    if len(prompt) > max_length:
        warnings.append(f"Prompt exceeds max length ({len(prompt)}/{max_length})")
        prompt = prompt[:max_length]
    return prompt


def _constraint_texts(directives: Iterable[str], blocks: Mapping[str, Block], values: Mapping[str, str]) -> List[str]:
    texts: List[str] = []
    for directive in directives:
        block = blocks.get(directive)
        text = _render(block.template, values, set()) if block else directive
        if text:
            texts.append(text)
    return texts


def compile_prompt(
    context: CompileContext, catalog: CatalogSnapshot, options: Optional[CompileOptions] = None
) -> CompileResult:
    options = options or CompileOptions()
    compile_input = context.input

    profile = catalog.profile(compile_input.profile_id)
    if profile is None:
        raise CompileError(f"Profile not found: {compile_input.profile_id}")
    blueprint = catalog.blueprint(compile_input.blueprint_id)
    if blueprint is None:
        raise CompileError(f"Blueprint not found: {compile_input.blueprint_id}")

    seed = generate_seed(compile_input)
    warnings: List[str] = []

    effects, unknown_filters = _resolve_filters(compile_input.filters, catalog, warnings)
    values: Dict[str, str] = {
        "subject": compile_input.subject,
        "items": compile_input.items,
        "environment": compile_input.environment,
        **effects,
    }

    fragments: List[str] = []
    consumed: set = set()
    unknown_blocks: List[str] = []
    block_count = 0
    for key in blueprint.blocks:
        block = catalog.blocks.get(key)
        if block is None:
            warnings.append(f"Block not found: {key}")
            unknown_blocks.append(key)
            continue
        block_count += 1
        text = _render(block.template, values, consumed)
        if text:
            fragments.append(text)
    fragments.extend(effect for key, effect in effects.items() if key not in consumed)
    body = ", ".join(fragments)

    rules, directives = split_constraints(blueprint.constraints)
    constraint_texts = _constraint_texts(directives, catalog.blocks, values)

    sections = [
        profile.base_prompt.strip(),
        SYSTEM_PROMPT_CORE if profile.include_system_prompt else "",
        f"Subject: {compile_input.subject}" if compile_input.subject else "",
        f"Environment: {compile_input.environment}" if compile_input.environment else "",
        f"Context: {compile_input.context}" if compile_input.context else "",
        body,
        f"Constraints: {', '.join(constraint_texts)}" if constraint_texts else "",
        f"Avoid: {compile_input.restrictions}" if compile_input.restrictions else "",
    ]
    prompt = "\n\n".join(section for section in sections if section)
    prompt = _apply_profile_rules(prompt, profile.forbidden_patterns, profile.max_length, warnings)

    violations = evaluate(rules, compile_input.filters, "Constraint violated")
    violations += evaluate(options.conflict_rules, compile_input.filters, "Filter conflict")
    warnings.extend(violations)

    score = score_prompt(
        prompt,
        subject=compile_input.subject,
        filter_count=len(effects),
        warnings=warnings,
        unknown_keys=len(unknown_blocks) + len(unknown_filters),
        violations=len(violations),
        policy=options.scoring,
    )

    metadata: Dict[str, object] = {
        "profileName": profile.name,
        "blueprintName": blueprint.name,
        "blockCount": block_count,
        "filterCount": len(compile_input.filters),
        "unknownBlocks": unknown_blocks,
        "unknownFilters": unknown_filters,
        "constraintViolations": len(violations),
    }

    character_pack = None
    lora = context.active_lora
    if lora is not None and context.target_platform and not platform_supports_lora(
        context.target_platform, options.lora_platforms
    ):
        character_pack = build_character_pack(compile_input, lora, context.target_platform)
        lora = None

    modifiers, cinematic_filters = resolve_modifiers(context.cinematic, options.cinematic_maps)
    if cinematic_filters:
        metadata["cinematicFilters"] = cinematic_filters

    gem_optimization = None
    selected_gems = []
    if context.gems:
        library = options.gem_library or load_gem_library()
        selected_gems, unknown_gems = library.resolve(context.gems)
        warnings.extend(f"Unknown gem: {gem_id}" for gem_id in unknown_gems)
        gem_optimization = build_optimization(selected_gems, compile_input.restrictions, library)

    pipeline = build_pipeline(
        lora=lora,
        lora_syntax=profile.lora_syntax,
        cinematic_modifiers=modifiers,
        gems=selected_gems,
        library=options.gem_library,
    )
    prompt = apply_transforms(prompt, pipeline)
    if pipeline and len(prompt) > profile.max_length:
        # Transform output is never truncated.
        warnings.append(f"Transformed prompt exceeds max length ({len(prompt)}/{profile.max_length})")
    metadata["transforms"] = [transform.name for transform in pipeline]
    metadata["filterCount"] = len(compile_input.filters) + len(modifiers) + len(context.gems)

    if warnings:
        logger.debug("Compiled %s/%s with warnings: %s", profile.id, blueprint.id, warnings)

    return CompileResult(
        compiled_prompt=prompt,
        seed=seed,
        score=score,
        warnings=warnings,
        metadata=metadata,
        character_pack=character_pack,
        gem_optimization=gem_optimization,
    )
