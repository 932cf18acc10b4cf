"""JSON HTTP API for the Vectra prompt compiler.

- Purpose: expose catalog, history, user blueprint, filter preset and Gemini Gem
  endpoints plus the generate flow (validation, plan gating, compile, persistence).
- Assumptions: the caller identity arrives in ``X-Vectra-User``; authentication
  itself happens upstream. An optional shared token guards every API route.
- Side effects: reads and writes the JSON collections of the catalog store and
  appends to the server log file.
"""

from __future__ import annotations

import argparse
import json
import logging
import re
import sys
import threading
from dataclasses import dataclass
from http import HTTPStatus
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import parse_qs, urlparse

from vectra import path_utils
from vectra.catalog.store import CatalogStore, NotFoundError
from vectra.config_service import config_service
from vectra.prompt_engine import gems as gem_presets
from vectra.prompt_engine.compiler import CompileContext, compile_prompt
from vectra.prompt_engine.models import Blueprint, LoraActivation
from vectra.prompt_engine.services import options_from_config

from .validation import GenerateRequest, RequestValidationError

logger = logging.getLogger(__name__)

USER_HEADER = "X-Vectra-User"
TOKEN_HEADER = "X-Vectra-Token"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _slugify(value: str) -> str:
    return re.sub(r"\s+", "_", value.strip().lower())


class APIError(Exception):
    """An error with a fixed HTTP status and extra JSON fields."""

    def __init__(self, message: str, status: HTTPStatus = HTTPStatus.BAD_REQUEST, **extra: object):
        super().__init__(message)
        self.status = status
        self.extra = extra

    def to_payload(self) -> Dict[str, object]:
        return {"error": str(self), **self.extra}


def premium_required(message: str, status: HTTPStatus = HTTPStatus.FORBIDDEN) -> APIError:
    return APIError(message, status=status, isPremiumRequired=True)


def _require_user(user_id: Optional[str]) -> str:
    if not user_id:
        raise APIError("Authentication required", status=HTTPStatus.UNAUTHORIZED)
    return user_id


@dataclass(frozen=True)
class Access:
    user_id: Optional[str]
    is_admin: bool = False
    is_pro: bool = False

    @property
    def unrestricted(self) -> bool:
        return self.is_admin or self.is_pro


class VectraAPI:
    """Backend helpers behind the HTTP routes."""

    def __init__(self, store: CatalogStore, config: Optional[Dict[str, object]] = None):
        self.store = store
        self.config = config or config_service.validate({}, [])
        self.options = options_from_config(self.config)
        self._lock = threading.Lock()

    def _quota(self, name: str) -> int:
        return int(config_service.deep_get(self.config, f"quotas.{name}"))

    def access_for(self, user_id: Optional[str]) -> Access:
        override = bool(config_service.deep_get(self.config, "access.admin_override"))
        user = self.store.get_user(user_id) if user_id else None
        return Access(
            user_id=user_id,
            is_admin=override or bool(user and user.get("isAdmin")),
            is_pro=bool(user and user.get("plan") == "pro"),
        )

    # ------------------------------------------------------------------
    # Catalog and history
    # ------------------------------------------------------------------
    def list_profiles(self) -> List[Dict[str, object]]:
        return self.store.list_profiles()

    def list_blueprints(self) -> List[Dict[str, object]]:
        return self.store.list_blueprints()

    def list_filters(self) -> List[Dict[str, object]]:
        return self.store.list_filters()

    def list_blocks(self) -> List[Dict[str, object]]:
        return self.store.list_blocks()

    def upsert_filter(self, user_id: Optional[str], payload: Dict[str, object]) -> Dict[str, object]:
        if not self.access_for(user_id).is_admin:
            raise APIError("Admin access required", status=HTTPStatus.FORBIDDEN)
        record = self.store.upsert_filter(payload)
        logger.info("Filter %s saved by %s", record["key"], user_id or "admin override")
        return record

    def history(self, user_id: Optional[str], limit: int = 50) -> List[Dict[str, object]]:
        return self.store.list_history(_require_user(user_id), limit=limit)

    def list_gems(self) -> List[Dict[str, object]]:
        return gem_presets.get_available_gems()

    def get_gem(self, gem_id: str) -> Dict[str, object]:
        gem = gem_presets.get_gem(gem_id)
        if gem is None:
            raise NotFoundError(f"Gem not found: {gem_id}")
        return gem.to_dict()

    def get_prompt(self, prompt_id: str) -> Dict[str, object]:
        prompt = self.store.get_generated_prompt(prompt_id)
        if prompt is None:
            raise NotFoundError("Prompt not found")
        return prompt

    def list_prompt_versions(self, prompt_id: str) -> List[Dict[str, object]]:
        self.get_prompt(prompt_id)
        return self.store.list_prompt_versions(prompt_id)

    def save_version(self, payload: Dict[str, object]) -> Dict[str, object]:
        prompt_id = payload.get("promptId")
        if not isinstance(prompt_id, str) or not prompt_id:
            raise ValueError("promptId is required")
        self.get_prompt(prompt_id)
        return self.store.save_prompt_version(prompt_id)

    # ------------------------------------------------------------------
    # User blueprints
    # ------------------------------------------------------------------
    def _owned_blueprint(self, blueprint_id: str, user_id: Optional[str]) -> Dict[str, object]:
        user_id = _require_user(user_id)
        blueprint = self.store.get_user_blueprint(blueprint_id)
        if blueprint is None or blueprint.get("userId") != user_id:
            raise NotFoundError("User blueprint not found")
        return blueprint

    def _check_blueprint_limit(self, access: Access) -> None:
        if access.unrestricted:
            return
        limit = self._quota("free_blueprint_limit")
        if self.store.count_user_blueprints(access.user_id) >= limit:
            raise premium_required(
                f"Free plan limited to {limit} custom blueprints. Upgrade to Pro for unlimited blueprints."
            )

    def list_user_blueprints(self, user_id: Optional[str]) -> List[Dict[str, object]]:
        return self.store.list_user_blueprints(_require_user(user_id))

    def get_user_blueprint(self, blueprint_id: str, user_id: Optional[str]) -> Dict[str, object]:
        return self._owned_blueprint(blueprint_id, user_id)

    def list_user_blueprint_versions(self, blueprint_id: str, user_id: Optional[str]) -> List[Dict[str, object]]:
        self._owned_blueprint(blueprint_id, user_id)
        return self.store.list_user_blueprint_versions(blueprint_id)

    def create_user_blueprint(self, user_id: Optional[str], payload: Dict[str, object]) -> Dict[str, object]:
        user_id = _require_user(user_id)
        with self._lock:
            self._check_blueprint_limit(self.access_for(user_id))
            return self.store.create_user_blueprint(user_id, payload)

    def update_user_blueprint(self, blueprint_id: str, user_id: Optional[str], payload: Dict[str, object]) -> Dict[str, object]:
        self._owned_blueprint(blueprint_id, user_id)
        return self.store.update_user_blueprint(blueprint_id, payload)

    def delete_user_blueprint(self, blueprint_id: str, user_id: Optional[str]) -> Dict[str, object]:
        self._owned_blueprint(blueprint_id, user_id)
        self.store.delete_user_blueprint(blueprint_id)
        return {"deleted": blueprint_id}

    def duplicate_user_blueprint(self, blueprint_id: str, user_id: Optional[str]) -> Dict[str, object]:
        with self._lock:
            self._owned_blueprint(blueprint_id, user_id)
            self._check_blueprint_limit(self.access_for(user_id))
            return self.store.duplicate_user_blueprint(blueprint_id, user_id)

    # ------------------------------------------------------------------
    # Filter presets
    # ------------------------------------------------------------------
    def list_filter_presets(self, user_id: Optional[str]) -> List[Dict[str, object]]:
        return self.store.list_filter_presets(_require_user(user_id))

    def get_filter_preset(self, preset_id: str, user_id: Optional[str]) -> Dict[str, object]:
        user_id = _require_user(user_id)
        preset = self.store.get_filter_preset(preset_id)
        if preset is None or preset.get("userId") != user_id:
            raise NotFoundError("Preset not found")
        return preset

    def create_filter_preset(self, user_id: Optional[str], payload: Dict[str, object]) -> Dict[str, object]:
        return self.store.create_filter_preset(_require_user(user_id), payload)

    def update_filter_preset(self, preset_id: str, user_id: Optional[str], payload: Dict[str, object]) -> Dict[str, object]:
        updated = self.store.update_filter_preset(preset_id, _require_user(user_id), payload)
        if updated is None:
            raise NotFoundError("Preset not found")
        return updated

    def delete_filter_preset(self, preset_id: str, user_id: Optional[str]) -> Dict[str, object]:
        if not self.store.delete_filter_preset(preset_id, _require_user(user_id)):
            raise NotFoundError("Preset not found")
        return {"success": True}

    # ------------------------------------------------------------------
    # Generate
    # ------------------------------------------------------------------
    def _gate(self, request: GenerateRequest, access: Access, usage_key: str, premium_keys: set) -> None:
        """Raise when a free caller exceeds the plan; never touches the compiler."""

        if access.unrestricted:
            return
        limit_name = "free_prompts_per_day" if access.user_id else "anonymous_prompts_per_day"
        daily_limit = self._quota(limit_name)
        if self.store.count_usage_today(usage_key, "prompt") >= daily_limit:
            raise premium_required(
                f"Daily generation limit reached ({daily_limit}/{daily_limit}). Upgrade to Pro for unlimited generations.",
                status=HTTPStatus.TOO_MANY_REQUESTS,
            )

        applied_premium = [key for key in request.filters if key in premium_keys]
        if applied_premium:
            raise premium_required(
                f"Premium filters detected: {', '.join(applied_premium)}. Upgrade to Pro to use these filters."
            )

        filter_limit = self._quota("free_filter_limit")
        if len(request.filters) > filter_limit:
            raise premium_required(f"Free plan limited to {filter_limit} filters. Upgrade to Pro for unlimited filters.")

    def _resolve_lora(self, request: GenerateRequest) -> Optional[LoraActivation]:
        if not request.lora_version_id:
            return None
        version = self.store.get_lora_version(request.lora_version_id)
        if version is None:
            raise ValueError("LoRA version not found")
        if not version.get("artifactUrl"):
            raise ValueError("LoRA version not trained yet")
        model = self.store.get_lora_model(str(version.get("loraModelId"))) or {}
        model_name = str(model.get("name") or "")
        weight = request.lora_weight
        if weight is None:
            weight = float(config_service.deep_get(self.config, "lora.default_weight") or 1.0)
        return LoraActivation(
            version=str(version["id"]),
            weight=weight,
            trigger_word=_slugify(model_name) or "custom_style",
            model_name=model_name or "Custom Model",
        )

    def generate(
        self, payload: object, user_id: Optional[str] = None, client_address: str = "anonymous"
    ) -> Dict[str, object]:
        request = GenerateRequest.from_dict(payload)
        access = self.access_for(user_id)
        usage_key = user_id or f"anon:{client_address}"

        with self._lock:
            catalog = self.store.snapshot()
            self._gate(request, access, usage_key, catalog.premium_filter_keys())

            blueprint_id = request.blueprint_id
            if request.user_blueprint_id:
                user_blueprint = self.store.get_user_blueprint(request.user_blueprint_id)
                if not user_id or user_blueprint is None or user_blueprint.get("userId") != user_id:
                    raise ValueError("User blueprint not found")
                if not user_blueprint.get("currentVersion"):
                    raise ValueError("User blueprint has no versions")
                catalog = catalog.with_blueprint(
                    Blueprint(
                        id=str(user_blueprint["id"]),
                        name=str(user_blueprint["name"]),
                        blocks=tuple(user_blueprint["blocks"]),
                        constraints=tuple(user_blueprint["constraints"]),
                        category=str(user_blueprint.get("category") or ""),
                        description=str(user_blueprint.get("description") or ""),
                        is_user=True,
                    )
                )
                blueprint_id = str(user_blueprint["id"])

            context = CompileContext(
                input=request.to_compile_input(blueprint_id),
                active_lora=self._resolve_lora(request),
                cinematic=request.cinematic,
                gems=request.gems,
                target_platform=request.target_platform or None,
            )
            result = compile_prompt(context, catalog, self.options)

            saved = self.store.create_generated_prompt(
                {
                    "userId": user_id,
                    "profileId": request.profile_id,
                    "blueprintId": request.blueprint_id or None,
                    "userBlueprintId": request.user_blueprint_id or None,
                    "seed": result.seed,
                    "input": request.input_summary(),
                    "appliedFilters": dict(request.filters),
                    "compiledPrompt": result.compiled_prompt,
                    "metadata": result.metadata,
                    "score": result.score,
                    "warnings": result.warnings,
                }
            )
            self.store.log_usage(
                usage_key,
                "prompt",
                {"filterCount": len(request.filters), "hasGeminiGems": bool(request.gems)},
            )

        response: Dict[str, object] = dict(saved)
        if result.character_pack is not None:
            response["characterPack"] = result.character_pack.to_dict()
        if result.gem_optimization is not None:
            response["gemOptimization"] = result.gem_optimization.to_dict()
        return response


class VectraRequestHandler(SimpleHTTPRequestHandler):
    """Route ``/api/`` requests to :class:`VectraAPI`; optionally serve static files."""

    def __init__(self, *args, api: VectraAPI, static_dir: Optional[Path], auth_token: Optional[str], **kwargs):
        self.api = api
        self.auth_token = auth_token
        self.static_dir = static_dir
        super().__init__(*args, directory=str(static_dir or Path.cwd()), **kwargs)

    def do_GET(self) -> None:  # noqa: N802
        parsed = urlparse(self.path)
        if parsed.path.startswith("/api/"):
            self._dispatch("GET", parsed.path, parse_qs(parsed.query))
            return
        if self.static_dir is None:
            self.send_error(HTTPStatus.NOT_FOUND, "No static content configured")
            return
        super().do_GET()

    def do_POST(self) -> None:  # noqa: N802
        self._dispatch_api("POST")

    def do_PATCH(self) -> None:  # noqa: N802
        self._dispatch_api("PATCH")

    def do_DELETE(self) -> None:  # noqa: N802
        self._dispatch_api("DELETE")

    def _dispatch_api(self, method: str) -> None:
        parsed = urlparse(self.path)
        if not parsed.path.startswith("/api/"):
            self.send_error(HTTPStatus.NOT_FOUND, f"Unsupported {method} path")
            return
        self._dispatch(method, parsed.path, parse_qs(parsed.query))

    @property
    def caller(self) -> Optional[str]:
        return self.headers.get(USER_HEADER) or None

    def _is_authorized(self) -> bool:
        if not self.auth_token:
            return True
        expected = f"Bearer {self.auth_token}"
        header = self.headers.get("Authorization", "")
        alt_header = self.headers.get(TOKEN_HEADER, "")
        return header == expected or alt_header == self.auth_token

    def _read_json_body(self) -> object:
        length_header = self.headers.get("Content-Length", "0")
        content_length = int(length_header) if length_header.isdigit() else 0
        raw_body = self.rfile.read(content_length) if content_length else b""
        if not raw_body:
            return {}
        try:
            return json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise RequestValidationError("Invalid request", [{"path": [], "message": f"Malformed JSON: {exc}"}]) from exc

    def _send_json(self, payload: object, status: HTTPStatus = HTTPStatus.OK) -> None:
        response = json.dumps(payload, indent=2, ensure_ascii=False).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(response)))
        self.end_headers()
        self.wfile.write(response)

    def _dispatch(self, method: str, path: str, query: Dict[str, List[str]]) -> None:
        if not self._is_authorized():
            self._send_json({"error": "Unauthorized"}, status=HTTPStatus.UNAUTHORIZED)
            return
        try:
            result = self._route(method, [part for part in path.strip("/").split("/")[1:] if part], query)
            if result is None:
                self._send_json({"error": "Unknown API endpoint"}, status=HTTPStatus.NOT_FOUND)
                return
            payload, status = result
            self._send_json(payload, status=status)
        except RequestValidationError as exc:
            self._send_json({"error": str(exc), "details": exc.details}, status=HTTPStatus.BAD_REQUEST)
        except APIError as exc:
            self._send_json(exc.to_payload(), status=exc.status)
        except NotFoundError as exc:
            self._send_json({"error": str(exc)}, status=HTTPStatus.NOT_FOUND)
        except ValueError as exc:
            self._send_json({"error": str(exc)}, status=HTTPStatus.BAD_REQUEST)
        except Exception:
            logger.exception("Unhandled error on %s %s", method, path)
            self._send_json({"error": "Internal server error"}, status=HTTPStatus.INTERNAL_SERVER_ERROR)

    def _route(self, method: str, parts: List[str], query: Dict[str, List[str]]):
        api = self.api
        user = self.caller
        ok = HTTPStatus.OK

        if method == "GET":
            if parts == ["profiles"]:
                return api.list_profiles(), ok
            if parts == ["blueprints"]:
                return api.list_blueprints(), ok
            if parts == ["filters"]:
                return api.list_filters(), ok
            if parts == ["blocks"]:
                return api.list_blocks(), ok
            if parts == ["history"]:
                limit = int((query.get("limit") or ["50"])[0])
                return api.history(user, limit=limit), ok
            if parts == ["gemini-gems"]:
                return api.list_gems(), ok
            if len(parts) == 2 and parts[0] == "gemini-gems":
                return api.get_gem(parts[1]), ok
            if len(parts) == 2 and parts[0] == "prompt":
                return api.get_prompt(parts[1]), ok
            if len(parts) == 3 and parts[0] == "prompt" and parts[2] == "versions":
                return api.list_prompt_versions(parts[1]), ok
            if parts == ["user-blueprints"]:
                return api.list_user_blueprints(user), ok
            if len(parts) == 2 and parts[0] == "user-blueprints":
                return api.get_user_blueprint(parts[1], user), ok
            if len(parts) == 3 and parts[0] == "user-blueprints" and parts[2] == "versions":
                return api.list_user_blueprint_versions(parts[1], user), ok
            if parts == ["presets"]:
                return api.list_filter_presets(user), ok
            if len(parts) == 2 and parts[0] == "presets":
                return api.get_filter_preset(parts[1], user), ok
            return None

        payload = self._read_json_body()
        if method == "POST":
            if parts == ["generate"]:
                return api.generate(payload, user, self.client_address[0]), ok
            if parts == ["save-version"]:
                return api.save_version(self._object(payload)), ok
            if parts == ["filters"]:
                return api.upsert_filter(user, self._object(payload)), ok
            if parts == ["presets"]:
                return api.create_filter_preset(user, self._object(payload)), HTTPStatus.CREATED
            if parts == ["user-blueprints"]:
                return api.create_user_blueprint(user, self._object(payload)), HTTPStatus.CREATED
            if len(parts) == 3 and parts[0] == "user-blueprints" and parts[2] == "duplicate":
                return api.duplicate_user_blueprint(parts[1], user), HTTPStatus.CREATED
            if len(parts) == 2 and parts[0] == "user-blueprints":
                body = self._object(payload)
                action = body.get("action", "update")
                if action == "delete":
                    return api.delete_user_blueprint(parts[1], user), ok
                if action == "update":
                    return api.update_user_blueprint(parts[1], user, body), ok
                raise ValueError(f"Unknown action: {action}")
            return None

        if len(parts) == 2 and parts[0] == "user-blueprints":
            if method == "PATCH":
                return api.update_user_blueprint(parts[1], user, self._object(payload)), ok
            if method == "DELETE":
                return api.delete_user_blueprint(parts[1], user), ok
        if len(parts) == 2 and parts[0] == "presets":
            if method == "PATCH":
                return api.update_filter_preset(parts[1], user, self._object(payload)), ok
            if method == "DELETE":
                return api.delete_filter_preset(parts[1], user), ok
        return None

    @staticmethod
    def _object(payload: object) -> Dict[str, object]:
        if not isinstance(payload, dict):
            raise RequestValidationError("Invalid request", [{"path": [], "message": "Body must be a JSON object"}])
        return payload

    def log_message(self, format: str, *args) -> None:  # noqa: A003
        logger.debug("%s - %s", self.address_string(), format % args)


def configure_logging(config: Dict[str, object]) -> Path:
    """Log to the console and to the configured (or platform default) log file."""

    log_file = config_service.deep_get(config, "logging.file")
    log_path = path_utils.ensure_file_path(Path(log_file) if log_file else path_utils.get_log_path())
    logging.basicConfig(
        level=getattr(logging, str(config_service.deep_get(config, "logging.level") or "INFO")),
        format=LOG_FORMAT,
        handlers=[logging.FileHandler(log_path, encoding="utf-8"), logging.StreamHandler()],
    )
    return log_path


def build_store(config: Dict[str, object], seed: bool = True) -> CatalogStore:
    catalog_file = config_service.deep_get(config, "storage.catalog_file") or None
    store = CatalogStore(Path(config_service.resolve_storage_root(config)), catalog_file=catalog_file)
    if seed:
        store.seed_defaults()
    return store


def run_server(
    config: Dict[str, object],
    host: Optional[str] = None,
    port: Optional[int] = None,
    auth_token: Optional[str] = None,
    static_dir: Optional[Path] = None,
) -> None:
    """Start the threaded HTTP server."""

    host = host or str(config_service.deep_get(config, "server.host"))
    port = port or int(config_service.deep_get(config, "server.port"))
    auth_token = auth_token or str(config_service.deep_get(config, "server.auth_token") or "") or None
    api = VectraAPI(build_store(config), config)

    def handler(*args, **kwargs):
        return VectraRequestHandler(*args, api=api, static_dir=static_dir, auth_token=auth_token, **kwargs)

    server = ThreadingHTTPServer((host, port), handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    token_note = " with bearer token auth" if auth_token else ""
    logger.info("Vectra API running on http://%s:%s%s", host, port, token_note)
    try:
        thread.join()
    except KeyboardInterrupt:
        logger.info("Shutting down Vectra API...")
        server.shutdown()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Vectra prompt API")
    parser.add_argument("--config", default=config_service.DEFAULT_CONFIG_PATH, help="Path to config file")
    parser.add_argument("--set", action="append", default=[], help="Override key=value (dot paths allowed)")
    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser("serve", help="Run the API server")
    serve_parser.add_argument("--host", help="Bind host (defaults to server.host)")
    serve_parser.add_argument("--port", type=int, help="Bind port (defaults to server.port)")
    serve_parser.add_argument("--auth-token", help="Optional bearer token required for API requests")
    serve_parser.add_argument("--static-dir", type=Path, help="Directory of static files to serve")

    seed_parser = subparsers.add_parser("seed", help="Seed the catalog collections from presets")
    seed_parser.add_argument("--force", action="store_true", help="Overwrite existing catalog collections")

    args = parser.parse_args(argv)
    try:
        loaded = config_service.load_config(args.config, overrides=args.set)
    except config_service.ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1

    log_path = configure_logging(loaded.data)
    for warning in loaded.warnings:
        logger.warning("Config: %s", warning)
    command = args.command or "serve"

    if command == "seed":
        store = build_store(loaded.data, seed=False)
        written = store.seed_defaults(force=args.force)
        print(json.dumps({"seeded": written, "root": str(store.root)}, indent=2))
        return 0

    logger.info("Logging to %s", log_path)
    run_server(
        loaded.data,
        host=getattr(args, "host", None),
        port=getattr(args, "port", None),
        auth_token=getattr(args, "auth_token", None),
        static_dir=getattr(args, "static_dir", None),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
