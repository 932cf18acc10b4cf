import re
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[3]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from vectra.prompt_engine.catalog import CatalogSnapshot
from vectra.prompt_engine.cinematic import CinematicSettings
from vectra.prompt_engine.compiler import (
    SYSTEM_PROMPT_CORE,
    CompileContext,
    CompileError,
    CompileOptions,
    compile_prompt,
    generate_seed,
)
from vectra.prompt_engine.constraints import conflict_rules_from_config
from vectra.prompt_engine.models import CompileInput, LoraActivation


def make_catalog(profile=None, blueprint=None, blocks=None, filters=None):
    return CatalogSnapshot.build(
        profiles=[profile or {"id": "bare", "name": "Bare", "lora_syntax": "angle"}],
        blueprints=[blueprint or {"id": "scene", "name": "Scene", "blocks": ["lighting_soft", "camera_wide"]}],
        blocks=blocks
        or [
            {"key": "lighting_soft", "label": "Soft light", "template": "soft ambient light"},
            {"key": "camera_wide", "label": "Wide", "type": "camera", "template": "wide angle shot"},
        ],
        filters=filters
        or [
            {"key": "color", "label": "Color", "effect": {"neon": "neon accents", "mono": "monochrome palette"}},
            {"key": "mood", "label": "Mood", "effect": {"dark": "brooding mood", "bright": "cheerful mood"}},
        ],
    )


def make_context(**overrides):
    context_fields = {key: overrides.pop(key) for key in list(overrides) if key in {"active_lora", "cinematic", "gems", "target_platform"}}
    payload = {"profile_id": "bare", "blueprint_id": "scene", "filters": {"color": "neon"}}
    payload.update(overrides)
    return CompileContext(input=CompileInput(**payload), **context_fields)


def test_blocks_and_filter_effects_join_in_order():
    result = compile_prompt(make_context(), make_catalog())

    assert result.compiled_prompt == "soft ambient light, wide angle shot, neon accents"
    assert result.warnings == []
    assert result.metadata["blockCount"] == 2
    assert result.metadata["filterCount"] == 1
    assert result.metadata["profileName"] == "Bare"
    assert result.metadata["blueprintName"] == "Scene"
    assert result.metadata["transforms"] == []


def test_block_order_follows_blueprint_declaration():
    catalog = make_catalog(blueprint={"id": "scene", "name": "Scene", "blocks": ["camera_wide", "lighting_soft"]})
    result = compile_prompt(make_context(filters={}), catalog)

    assert result.compiled_prompt == "wide angle shot, soft ambient light"


def test_filter_effects_follow_request_order():
    result = compile_prompt(make_context(filters={"mood": "dark", "color": "mono"}), make_catalog())

    assert result.compiled_prompt.endswith("brooding mood, monochrome palette")


def test_seed_is_deterministic_and_explicit_seed_wins():
    first = compile_prompt(make_context(subject="a cat"), make_catalog())
    second = compile_prompt(make_context(subject="a cat"), make_catalog())
    other = compile_prompt(make_context(subject="a dog"), make_catalog())
    explicit = compile_prompt(make_context(seed="fixed-seed"), make_catalog())

    assert first.seed == second.seed
    assert re.fullmatch(r"[0-9a-f]{8}", first.seed)
    assert other.seed != first.seed
    assert explicit.seed == "fixed-seed"
    assert generate_seed(CompileInput(profile_id="bare", blueprint_id="scene", subject="a cat", filters={"color": "neon"})) == first.seed


def test_missing_profile_or_blueprint_raises():
    with pytest.raises(CompileError, match="Profile not found: nope"):
        compile_prompt(make_context(profile_id="nope"), make_catalog())
    with pytest.raises(CompileError, match="Blueprint not found: nope"):
        compile_prompt(make_context(blueprint_id="nope"), make_catalog())


def test_unknown_block_is_skipped_with_warning():
    catalog = make_catalog(blueprint={"id": "scene", "name": "Scene", "blocks": ["lighting_soft", "ghost"]})
    result = compile_prompt(make_context(filters={}), catalog)

    assert result.compiled_prompt == "soft ambient light"
    assert "Block not found: ghost" in result.warnings
    assert result.metadata["unknownBlocks"] == ["ghost"]
    assert result.metadata["blockCount"] == 1


def test_unknown_filter_and_value_produce_warnings():
    result = compile_prompt(make_context(filters={"texture": "rough", "color": "plaid"}), make_catalog())

    assert "Unknown filter: texture" in result.warnings
    assert "Unknown value 'plaid' for filter 'color'" in result.warnings
    assert result.metadata["unknownFilters"] == ["texture", "color"]
    assert "plaid" not in result.compiled_prompt


def test_placeholders_consume_inputs_and_effects():
    catalog = make_catalog(
        blueprint={"id": "scene", "name": "Scene", "blocks": ["portrait"]},
        blocks=[{"key": "portrait", "label": "Portrait", "template": "{subject} lit with {color}, {environment}"}],
    )
    result = compile_prompt(make_context(subject="a fox", environment=""), catalog)

    body = result.compiled_prompt.split("\n\n")[-1]
    assert body == "a fox lit with neon accents"
    assert result.compiled_prompt.count("neon accents") == 1


def test_sections_are_assembled_in_order():
    profile = {"id": "bare", "name": "Bare", "base_prompt": "Base line."}
    context = make_context(subject="a fox", environment="forest", context="night walk", restrictions="blurry")
    result = compile_prompt(context, make_catalog(profile=profile))

    sections = result.compiled_prompt.split("\n\n")
    assert sections == [
        "Base line.",
        "Subject: a fox",
        "Environment: forest",
        "Context: night walk",
        "soft ambient light, wide angle shot, neon accents",
        "Avoid: blurry",
    ]


def test_system_prompt_is_included_when_profile_requests_it():
    profile = {"id": "bare", "name": "Bare", "include_system_prompt": True}
    result = compile_prompt(make_context(), make_catalog(profile=profile))

    assert result.compiled_prompt.startswith(SYSTEM_PROMPT_CORE)


def test_forbidden_patterns_are_removed_case_insensitively():
    profile = {"id": "bare", "name": "Bare", "forbidden_patterns": ["gore"]}
    result = compile_prompt(make_context(subject="GORE splattered hero"), make_catalog(profile=profile))

    assert 'Contains forbidden pattern: "gore"' in result.warnings
    assert "gore" not in result.compiled_prompt.lower()
    assert "Subject: splattered hero" in result.compiled_prompt


def test_prompt_is_truncated_to_profile_max_length():
    profile = {"id": "bare", "name": "Bare", "max_length": 20}
    result = compile_prompt(make_context(), make_catalog(profile=profile))

    assert len(result.compiled_prompt) == 20
    assert any(warning.startswith("Prompt exceeds max length (") for warning in result.warnings)
    assert "/20)" in result.warnings[-1]


def test_transform_output_over_max_length_is_flagged_not_cut():
    profile = {"id": "bare", "name": "Bare", "max_length": 60, "lora_syntax": "angle"}
    lora = LoraActivation(version="v1", weight=0.8, trigger_word="mystyle", model_name="My Style")
    result = compile_prompt(make_context(active_lora=lora), make_catalog(profile=profile))

    assert len(result.compiled_prompt) > 60
    assert result.compiled_prompt.endswith("mystyle, <lora:mystyle:0.8>")
    assert result.warnings == [f"Transformed prompt exceeds max length ({len(result.compiled_prompt)}/60)"]


def test_constraint_rules_and_directives():
    blueprint = {
        "id": "scene",
        "name": "Scene",
        "blocks": ["lighting_soft"],
        "constraints": ["color=neon excludes mood=dark", "keep edges crisp", "camera_wide"],
    }
    result = compile_prompt(make_context(filters={"color": "neon", "mood": "dark"}), make_catalog(blueprint=blueprint))

    assert "Constraint violated: color=neon excludes mood=dark" in result.warnings
    assert result.metadata["constraintViolations"] == 1
    assert "Constraints: keep edges crisp, wide angle shot" in result.compiled_prompt


def test_configured_conflicts_are_reported():
    options = CompileOptions(
        conflict_rules=conflict_rules_from_config(
            [{"rule": "color=neon excludes mood=dark", "message": "Neon clashes with a dark mood"}]
        )
    )
    result = compile_prompt(make_context(filters={"color": "neon", "mood": "dark"}), make_catalog(), options)

    assert "Filter conflict: Neon clashes with a dark mood" in result.warnings
    clean = compile_prompt(make_context(filters={"color": "neon", "mood": "bright"}), make_catalog(), options)
    assert not any(warning.startswith("Filter conflict") for warning in clean.warnings)


def test_score_is_bounded_and_penalized_by_warnings():
    clean = compile_prompt(make_context(subject="a fox"), make_catalog())
    noisy = compile_prompt(make_context(subject="a fox", filters={"a": "1", "b": "2", "c": "3"}), make_catalog())

    assert 0 <= noisy.score < clean.score <= 100


def test_lora_fragment_uses_profile_syntax():
    lora = LoraActivation(version="v1", weight=0.8, trigger_word="mystyle", model_name="My Style")
    result = compile_prompt(make_context(active_lora=lora), make_catalog())

    assert result.compiled_prompt.endswith("\n\nmystyle, <lora:mystyle:0.8>")
    assert result.metadata["transforms"] == ["lora"]


def test_lora_becomes_character_pack_on_unsupported_platform():
    lora = LoraActivation(version="v1", weight=1.0, trigger_word="neon_dreams", model_name="Neon Dreams")
    result = compile_prompt(make_context(active_lora=lora, target_platform="midjourney", subject="a fox"), make_catalog())

    assert result.character_pack is not None
    assert result.character_pack.trigger_concept == "neon dreams"
    assert "<lora:" not in result.compiled_prompt
    assert result.metadata["transforms"] == []
    assert result.to_payload()["characterPack"]["name"] == "Neon Dreams"


def test_lora_kept_on_supported_platform():
    lora = LoraActivation(version="v1", weight=1.0, trigger_word="mystyle", model_name="My Style")
    result = compile_prompt(make_context(active_lora=lora, target_platform="Flux-Dev"), make_catalog())

    assert result.character_pack is None
    assert "<lora:mystyle:1>" in result.compiled_prompt


def test_cinematic_settings_prefix_prompt():
    settings = CinematicSettings(optics_style="cinematic", vfx_effects=("vhs", "off"), vfx_intensity=85, brand="auto")
    result = compile_prompt(make_context(cinematic=settings), make_catalog())

    assert result.compiled_prompt.startswith("[VISUAL STYLE: professional cinematic photography")
    assert "EXTREMELY STRONG VHS tape recording aesthetic" in result.compiled_prompt
    assert result.metadata["cinematicFilters"] == {"camera_style": "cinematic", "vfx_vhs": "85"}
    assert result.metadata["filterCount"] == 3
    assert not any(warning.startswith("Unknown filter") for warning in result.warnings)


def test_gems_wrap_prompt_and_return_optimization():
    result = compile_prompt(make_context(gems=("face_swapper", "mystery"), restrictions="blurry"), make_catalog())

    assert result.compiled_prompt.startswith("[FACIAL BIOMETRICS LOCKDOWN MODE]")
    assert "Quality: photorealistic skin texture" in result.compiled_prompt
    assert "Unknown gem: mystery" in result.warnings
    assert result.gem_optimization.applied_gems == ["FACE-SWAPPER"]
    assert result.gem_optimization.negative_prompt.startswith("blurry, deformed face")
    assert result.metadata["transforms"] == ["gemini_gems"]


def test_transforms_run_lora_then_cinematic_then_gems():
    lora = LoraActivation(version="v1", weight=1.0, trigger_word="mystyle", model_name="My Style")
    settings = CinematicSettings(optics_style="smartphone")
    result = compile_prompt(
        make_context(active_lora=lora, cinematic=settings, gems=("real_life_context",)), make_catalog()
    )
    prompt = result.compiled_prompt

    assert result.metadata["transforms"] == ["lora", "cinematic", "gemini_gems"]
    assert prompt.index("[VISUAL STYLE:") < prompt.index("soft ambient light") < prompt.index("<lora:mystyle:1>")
    assert prompt.index("<lora:mystyle:1>") < prompt.index("Quality:")
    assert result.metadata["filterCount"] == 1 + 1 + 1


def test_compile_does_not_mutate_catalog():
    catalog = make_catalog()
    lora = LoraActivation(version="v1", weight=1.0, trigger_word="mystyle", model_name="My Style")
    compile_prompt(make_context(active_lora=lora), catalog)
    again = compile_prompt(make_context(), catalog)

    assert "mystyle" not in again.compiled_prompt
    assert list(catalog.blueprints) == ["scene"]
