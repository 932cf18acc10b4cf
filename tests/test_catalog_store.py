import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from vectra.catalog.store import CatalogStore, NotFoundError


class StepClock:
    """Deterministic clock advancing one minute per call."""

    def __init__(self, start=datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)):
        self.current = start

    def __call__(self):
        value = self.current
        self.current += timedelta(minutes=1)
        return value


@pytest.fixture
def store(tmp_path):
    instance = CatalogStore(tmp_path / "data", clock=StepClock())
    instance.seed_defaults()
    return instance


def test_seed_defaults_populates_once(store):
    assert len(store.list_profiles()) == 4
    assert len(store.list_blueprints()) == 9
    assert {item["key"] for item in store.list_filters()} >= {"camera_bias", "temporal_style"}
    assert store.seed_defaults() == {}
    assert store.seed_defaults(force=True)["profiles"] == 4


def test_snapshot_reflects_premium_filters(store):
    snapshot = store.snapshot()

    assert snapshot.premium_filter_keys() == {"camera_bias", "temporal_style"}
    assert snapshot.profile("dalle_3").include_system_prompt is True


def test_user_blueprint_versions(store):
    created = store.create_user_blueprint("u1", {"name": "Mine", "blocks": ["pixelart_base"], "constraints": ["no blur"]})

    assert created["currentVersion"] == 1
    assert created["blocks"] == ["pixelart_base"]

    updated = store.update_user_blueprint(created["id"], {"description": "tweaked", "blocks": ["pixelart_base", "food_subject"]})
    assert updated["currentVersion"] == 2
    assert updated["constraints"] == ["no blur"]
    assert updated["description"] == "tweaked"
    assert [v["version"] for v in store.list_user_blueprint_versions(created["id"])] == [1, 2]

    metadata_only = store.update_user_blueprint(created["id"], {"name": "  Renamed  "})
    assert metadata_only["currentVersion"] == 2
    assert metadata_only["name"] == "Renamed"


def test_user_blueprint_rejects_unknown_blocks(store):
    with pytest.raises(ValueError, match="Unknown block keys: ghost"):
        store.create_user_blueprint("u1", {"name": "Bad", "blocks": ["ghost"]})
    with pytest.raises(ValueError, match="name is required"):
        store.create_user_blueprint("u1", {"blocks": ["pixelart_base"]})


def test_duplicate_and_delete_user_blueprint(store):
    original = store.create_user_blueprint("u1", {"name": "Mine", "blocks": ["pixelart_base"]})
    copy = store.duplicate_user_blueprint(original["id"], "u1")

    assert copy["name"] == "Mine (Copy)"
    assert copy["blocks"] == ["pixelart_base"]
    assert store.count_user_blueprints("u1") == 2

    store.delete_user_blueprint(original["id"])
    assert store.get_user_blueprint(original["id"]) is None
    assert store.list_user_blueprint_versions(original["id"]) == []
    with pytest.raises(NotFoundError):
        store.delete_user_blueprint(original["id"])


def test_lora_version_lifecycle(store):
    model = store.create_lora_model("u1", "Neon Dreams")
    version = store.create_lora_version(model["id"])

    assert version["status"] == "pending"
    assert version["artifactUrl"] is None

    trained = store.mark_lora_version_trained(version["id"], "https://example.invalid/neon.safetensors")
    assert trained["status"] == "trained"
    assert store.get_lora_version(version["id"])["artifactUrl"].endswith("neon.safetensors")


def test_history_is_newest_first_and_versions_increment(store):
    first = store.create_generated_prompt({"userId": "u1", "compiledPrompt": "one"})
    second = store.create_generated_prompt({"userId": "u1", "compiledPrompt": "two"})
    store.create_generated_prompt({"userId": "u2", "compiledPrompt": "other"})

    assert [item["id"] for item in store.list_history("u1")] == [second["id"], first["id"]]
    assert store.save_prompt_version(first["id"])["version"] == 1
    assert store.save_prompt_version(first["id"])["version"] == 2
    with pytest.raises(NotFoundError):
        store.save_prompt_version("missing")


def test_usage_counts_only_today(tmp_path):
    clock = StepClock(start=datetime(2026, 3, 1, 23, 58, tzinfo=timezone.utc))
    store = CatalogStore(tmp_path, clock=clock)
    store.log_usage("u1", "prompt")
    store.log_usage("u1", "prompt")
    store.log_usage("u1", "prompt")

    # The third record and the count itself fall on the next day.
    assert store.count_usage_today("u1", "prompt") == 1
    assert store.count_usage_today("u2", "prompt") == 0


def test_upsert_user_validates_plan(store):
    assert store.upsert_user("u1", plan="pro")["plan"] == "pro"
    assert store.upsert_user("u1", is_admin=True)["isAdmin"] is True
    with pytest.raises(ValueError):
        store.upsert_user("u1", plan="enterprise")


def test_upsert_filter_replaces_by_key(store):
    store.upsert_filter({"key": "grain", "label": "Grain", "effect": {"heavy": "heavy film grain"}, "isPremium": True})
    store.upsert_filter({"key": "grain", "label": "Film grain", "effect": {"light": "light film grain"}})

    grain = [item for item in store.list_filters() if item["key"] == "grain"]
    assert grain == [
        {
            "key": "grain",
            "label": "Film grain",
            "schema": {"type": "select", "options": ["light"]},
            "effect": {"light": "light film grain"},
            "isPremium": 0,
        }
    ]
    assert "grain" not in store.snapshot().premium_filter_keys()
    with pytest.raises(ValueError, match="key is required"):
        store.upsert_filter({"label": "No key"})


def test_filter_presets_are_scoped_to_owner(store):
    preset = store.create_filter_preset("u1", {"name": " Night ", "filters": {"camera_bias": "cctv"}, "isDefault": True})

    assert preset["name"] == "Night"
    assert preset["isDefault"] is True
    assert store.list_filter_presets("u1") == [preset]
    assert store.list_filter_presets("u2") == []

    assert store.update_filter_preset(preset["id"], "u2", {"name": "Stolen"}) is None
    updated = store.update_filter_preset(preset["id"], "u1", {"filters": {"ugc_realism": "phone"}})
    assert updated["name"] == "Night"
    assert updated["filters"] == {"ugc_realism": "phone"}
    assert updated["updatedAt"] > updated["createdAt"]

    assert store.delete_filter_preset(preset["id"], "u2") is False
    assert store.delete_filter_preset(preset["id"], "u1") is True
    assert store.get_filter_preset(preset["id"]) is None


def test_filter_preset_validation(store):
    with pytest.raises(ValueError, match="name is required"):
        store.create_filter_preset("u1", {"filters": {}})
    with pytest.raises(ValueError, match="filters must map"):
        store.create_filter_preset("u1", {"name": "Bad", "filters": {"camera_bias": 3}})
