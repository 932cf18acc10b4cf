import json
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[3]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from vectra.prompt_engine import __main__ as prompt_cli


def write_request(tmp_path, **payload):
    path = tmp_path / "request.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_cli_compiles_request(tmp_path, capsys):
    request_path = write_request(
        tmp_path,
        profileId="midjourney_v6",
        blueprintId="cctv_detection",
        subject="parking lot at night",
        filters={"ugc_realism": "cinematic", "camera_bias": "cctv"},
        lora={"triggerWord": "nightcam", "weight": 0.9},
    )

    assert prompt_cli.main(["--input", str(request_path)]) == 0
    payload = json.loads(capsys.readouterr().out)

    assert "security camera view" in payload["compiledPrompt"]
    assert payload["compiledPrompt"].endswith("nightcam, nightcam::0.9")
    assert "Constraint violated: ugc_realism=cinematic excludes camera_bias=cctv" in payload["warnings"]
    assert payload["metadata"]["transforms"] == ["lora"]


def test_cli_text_mode_prints_prompt_only(tmp_path, capsys):
    request_path = write_request(tmp_path, profileId="sdxl", blueprintId="mspaint_screen", subject="a horse")

    prompt_cli.main(["--input", str(request_path), "--text"])
    output = capsys.readouterr().out

    assert output.startswith("A masterfully crafted image")
    assert "amateur digital drawing of a horse" in output


def test_cli_uses_config_conflicts(tmp_path, capsys):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        "version: 2\nconflicts:\n  - rule: prompt_length=long requires layout_entropy\n    message: Long prompts need a layout\n",
        encoding="utf-8",
    )
    request_path = write_request(
        tmp_path, profileId="sdxl", blueprintId="minecraft_food", filters={"prompt_length": "long"}
    )

    prompt_cli.main(["--input", str(request_path), "--config", str(config_path)])
    payload = json.loads(capsys.readouterr().out)

    assert "Filter conflict: Long prompts need a layout" in payload["warnings"]


def test_cli_reports_unknown_profile(tmp_path):
    request_path = write_request(tmp_path, profileId="nope", blueprintId="minecraft_food")

    with pytest.raises(SystemExit, match="Profile not found: nope"):
        prompt_cli.main(["--input", str(request_path)])
