import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[3]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from vectra.catalog.presets import load_presets
from vectra.prompt_engine.services import PromptCompiler, options_from_config


@pytest.fixture
def compiler():
    instance = PromptCompiler()
    instance.set_data(**load_presets())
    return instance


def request(**extra):
    payload = {"profileId": "sdxl", "blueprintId": "minecraft_food", "subject": "a taco"}
    payload.update(extra)
    return payload


def test_compile_with_bundled_catalog(compiler):
    result = compiler.compile(request(filters={"layout_entropy": "strict"}))

    assert "pixel art style" in result.compiled_prompt
    assert "a taco, appetizing presentation" in result.compiled_prompt
    assert "rigid composition, rule of thirds" in result.compiled_prompt
    assert result.warnings == []


def test_active_lora_does_not_leak_after_reset(compiler):
    compiler.set_active_lora({"triggerWord": "pixelchef", "weight": 0.6, "modelName": "Pixel Chef"})
    with_lora = compiler.compile(request())
    compiler.reset_request_state()
    without_lora = compiler.compile(request())

    assert "<lora:pixelchef:0.6>" in with_lora.compiled_prompt
    assert "pixelchef" not in without_lora.compiled_prompt
    assert compiler.active_lora is None


def test_registered_user_blueprint_resolves_until_reset(compiler):
    compiler.register_user_blueprint(
        {"id": "ub-1", "name": "My Fridge", "blocks": ["collage_base", "magnet_elements"], "constraints": []}
    )
    result = compiler.compile(request(blueprintId="ub-1", items="pizza magnet"))

    assert result.metadata["blueprintName"] == "My Fridge"
    assert "fridge magnets, letter magnets, magnetic clips, pizza magnet" in result.compiled_prompt
    assert compiler.catalog.blueprint("ub-1").is_user is True

    compiler.reset_request_state()
    with pytest.raises(ValueError, match="Blueprint not found: ub-1"):
        compiler.compile(request(blueprintId="ub-1"))


def test_character_pack_requires_active_lora(compiler):
    with pytest.raises(ValueError):
        compiler.generate_character_pack(request(), "midjourney")

    compiler.set_active_lora({"triggerWord": "pixel_chef", "weight": 1.0, "modelName": "Pixel Chef"})
    pack = compiler.generate_character_pack(request(), "midjourney")

    assert pack.prompt_snippet == "a taco, in the style of pixel chef"
    assert pack.to_text().startswith("Character Pack: Pixel Chef")


def test_seed_matches_compile_seed(compiler):
    assert compiler.generate_seed(request()) == compiler.compile(request()).seed


def test_options_from_config_reads_sections():
    options = options_from_config(
        {
            "scoring": {"warning_penalty": 9},
            "conflicts": [{"rule": "a=1 requires b=2"}],
            "lora": {"supported_platforms": ["flux"]},
        }
    )

    assert options.scoring.warning_penalty == 9
    assert options.conflict_rules[0].describe() == "a=1 requires b=2"
    assert options.lora_platforms == ("flux",)
