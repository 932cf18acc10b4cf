import json
import threading
import urllib.error
import urllib.request
from http.server import ThreadingHTTPServer
from pathlib import Path
import sys

import pytest

sys.path.append(str(Path(__file__).resolve().parents[2]))

from vectra.catalog.store import CatalogStore  # noqa: E402
from vectra.config_service import config_service  # noqa: E402
from vectra.web import server  # noqa: E402


@pytest.fixture
def base_url(tmp_path):
    store = CatalogStore(tmp_path / "data")
    store.seed_defaults()
    api = server.VectraAPI(store, config_service.validate({}, []))

    def handler(*args, **kwargs):
        return server.VectraRequestHandler(*args, api=api, static_dir=None, auth_token="secret", **kwargs)

    httpd = ThreadingHTTPServer(("127.0.0.1", 0), handler)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{httpd.server_address[1]}"
    httpd.shutdown()
    httpd.server_close()


def call(url, method="GET", body=None, token="secret", user="u1"):
    data = json.dumps(body).encode("utf-8") if body is not None else None
    request = urllib.request.Request(url, data=data, method=method)
    request.add_header("Content-Type", "application/json")
    if token:
        request.add_header("Authorization", f"Bearer {token}")
    if user:
        request.add_header(server.USER_HEADER, user)
    try:
        with urllib.request.urlopen(request, timeout=5) as response:
            return response.status, json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        return exc.code, json.loads(exc.read().decode("utf-8"))


def test_requires_token(base_url):
    status, payload = call(f"{base_url}/api/profiles", token=None)

    assert status == 401
    assert payload["error"] == "Unauthorized"


def test_alternate_token_header(base_url):
    request = urllib.request.Request(f"{base_url}/api/filters")
    request.add_header(server.TOKEN_HEADER, "secret")
    with urllib.request.urlopen(request, timeout=5) as response:
        filters = json.loads(response.read().decode("utf-8"))

    assert {item["key"] for item in filters} >= {"camera_bias", "ugc_realism"}


def test_catalog_listing(base_url):
    status, profiles = call(f"{base_url}/api/profiles")

    assert status == 200
    assert [profile["id"] for profile in profiles] == ["midjourney_v6", "dalle_3", "sdxl", "flux_pro"]


def test_generate_and_fetch_prompt(base_url):
    status, created = call(
        f"{base_url}/api/generate",
        method="POST",
        body={"profileId": "flux_pro", "blueprintId": "weightless_phone_photo", "subject": "sneakers"},
    )
    assert status == 200
    assert "sneakers levitating" in created["compiledPrompt"]

    status, fetched = call(f"{base_url}/api/prompt/{created['id']}")
    assert status == 200
    assert fetched["seed"] == created["seed"]

    status, version = call(f"{base_url}/api/save-version", method="POST", body={"promptId": created["id"]})
    assert status == 200
    assert version["version"] == 1

    status, history = call(f"{base_url}/api/history?limit=5")
    assert [item["id"] for item in history] == [created["id"]]


def test_validation_and_gating_errors(base_url):
    status, payload = call(f"{base_url}/api/generate", method="POST", body={"blueprintId": "cctv_detection"})
    assert status == 400
    assert payload["error"] == "Invalid request"
    assert payload["details"][0]["path"] == ["profileId"]

    status, payload = call(
        f"{base_url}/api/generate",
        method="POST",
        body={"profileId": "sdxl", "blueprintId": "cctv_detection", "filters": {"camera_bias": "cctv"}},
    )
    assert status == 403
    assert payload["isPremiumRequired"] is True

    status, payload = call(f"{base_url}/api/generate", method="POST", body={"profileId": "nope", "blueprintId": "cctv_detection"})
    assert status == 400
    assert payload["error"] == "Profile not found: nope"


def test_user_blueprint_routes(base_url):
    status, created = call(
        f"{base_url}/api/user-blueprints", method="POST", body={"name": "Mine", "blocks": ["cctv_camera"]}
    )
    assert status == 201
    blueprint_url = f"{base_url}/api/user-blueprints/{created['id']}"

    status, updated = call(blueprint_url, method="PATCH", body={"constraints": ["grainy"]})
    assert status == 200
    assert updated["currentVersion"] == 2

    status, copied = call(f"{blueprint_url}/duplicate", method="POST", body={})
    assert status == 201
    assert copied["name"] == "Mine (Copy)"

    status, _ = call(blueprint_url, user="someone-else")
    assert status == 404

    status, deleted = call(blueprint_url, method="POST", body={"action": "delete"})
    assert status == 200
    assert deleted == {"deleted": created["id"]}

    status, remaining = call(f"{base_url}/api/user-blueprints")
    assert [item["id"] for item in remaining] == [copied["id"]]


def test_gem_routes(base_url):
    status, gems = call(f"{base_url}/api/gemini-gems")
    assert status == 200
    assert len(gems) == 4

    status, payload = call(f"{base_url}/api/gemini-gems/nope")
    assert status == 404
    assert "Gem not found" in payload["error"]


def test_unknown_endpoint(base_url):
    status, payload = call(f"{base_url}/api/unknown")

    assert status == 404
    assert payload["error"] == "Unknown API endpoint"


def test_anonymous_caller_gets_401_on_owned_routes(base_url):
    for path in ("/api/history", "/api/user-blueprints", "/api/presets"):
        status, payload = call(f"{base_url}{path}", user=None)
        assert status == 401
        assert payload["error"] == "Authentication required"


def test_blocks_route(base_url):
    status, blocks = call(f"{base_url}/api/blocks")

    assert status == 200
    assert "pixelart_base" in {block["key"] for block in blocks}


def test_preset_routes(base_url):
    status, created = call(f"{base_url}/api/presets", method="POST", body={"name": "Night", "filters": {"ugc_realism": "phone"}})
    assert status == 201
    preset_url = f"{base_url}/api/presets/{created['id']}"

    status, updated = call(preset_url, method="PATCH", body={"description": "after dark"})
    assert status == 200
    assert updated["description"] == "after dark"

    status, _ = call(preset_url, user="someone-else")
    assert status == 404

    status, deleted = call(preset_url, method="DELETE")
    assert status == 200
    assert deleted == {"success": True}

    status, remaining = call(f"{base_url}/api/presets")
    assert remaining == []


def test_filter_upsert_route_is_admin_only(base_url):
    status, payload = call(f"{base_url}/api/filters", method="POST", body={"key": "grain", "effect": {"on": "film grain"}})

    assert status == 403
    assert payload["error"] == "Admin access required"
