"""File-backed store for catalog entities and per-user data.

- Purpose: persist profiles, blueprints, blocks, filters, user blueprints and
  their versions, filter presets, LoRA models/versions, users, generated
  prompts, prompt versions and usage records.
- Assumptions: one JSON document (a list of records) per collection under the
  storage root; records are stored in their camelCase wire form so route
  handlers can return them unchanged.
- Side effects: creates the storage root and rewrites collection files
  atomically on every mutation.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from vectra.prompt_engine.catalog import CatalogSnapshot
from vectra.prompt_engine.models import Block, Blueprint, Filter, Profile

from .presets import load_presets

logger = logging.getLogger(__name__)

CATALOG_MODELS = {"profiles": Profile, "blueprints": Blueprint, "blocks": Block, "filters": Filter}
USER_BLUEPRINT_FIELDS = ("name", "description", "category", "tags", "compatibleProfiles", "isActive")
PLANS = {"free", "pro"}


class StoreError(Exception):
    """Raised when a collection cannot be read or written."""


class NotFoundError(StoreError):
    """Raised when a referenced record does not exist."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


def _string_list(value: object, field_name: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"{field_name} must be a list of strings")
    return [item.strip() for item in value if item.strip()]


class CatalogStore:
    """JSON collections under ``root`` guarded by a single re-entrant lock."""

    def __init__(
        self,
        root: Path,
        catalog_file: Optional[Path] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.root = Path(root)
        self.catalog_file = Path(catalog_file) if catalog_file else None
        self._clock = clock
        self._lock = threading.RLock()
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Collection I/O
    # ------------------------------------------------------------------
    def _path(self, collection: str) -> Path:
        return self.root / f"{collection}.json"

    def _read(self, collection: str) -> List[Dict[str, object]]:
        path = self._path(collection)
        if not path.exists():
            return []
        try:
            data = json.loads(path.read_text(encoding="utf-8") or "[]")
        except (OSError, json.JSONDecodeError) as exc:
            raise StoreError(f"Failed to read {path}: {exc}") from exc
        if not isinstance(data, list):
            raise StoreError(f"{path} must contain a JSON list")
        return data

    def _write(self, collection: str, records: List[Dict[str, object]]) -> None:
        path = self._path(collection)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{collection}.", suffix=".json", dir=str(self.root))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(records, handle, indent=2, ensure_ascii=False)
            os.replace(tmp_name, path)
        except OSError as exc:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StoreError(f"Failed to write {path}: {exc}") from exc

    def _find(self, collection: str, record_id: str, key: str = "id") -> Optional[Dict[str, object]]:
        for record in self._read(collection):
            if record.get(key) == record_id:
                return record
        return None

    def _insert(self, collection: str, record: Dict[str, object]) -> Dict[str, object]:
        with self._lock:
            records = self._read(collection)
            records.append(record)
            self._write(collection, records)
        return record

    def _timestamp(self) -> str:
        return self._clock().isoformat().replace("+00:00", "Z")

    # ------------------------------------------------------------------
    # Reference catalog
    # ------------------------------------------------------------------
    def seed_defaults(self, force: bool = False) -> Dict[str, int]:
        """Populate empty catalog collections from the bundled presets.

        Returns the number of records written per collection. Existing
        collections are left alone unless ``force`` is set.
        """

        presets = load_presets(self.catalog_file)
        written: Dict[str, int] = {}
        with self._lock:
            for collection, model in CATALOG_MODELS.items():
                if self._read(collection) and not force:
                    continue
                records = [model.from_dict(entry).to_dict() for entry in presets.get(collection, [])]
                self._write(collection, records)
                written[collection] = len(records)
        if written:
            logger.info("Seeded catalog collections: %s", written)
        return written

    def list_profiles(self) -> List[Dict[str, object]]:
        return self._read("profiles")

    def list_blueprints(self) -> List[Dict[str, object]]:
        return self._read("blueprints")

    def list_blocks(self) -> List[Dict[str, object]]:
        return self._read("blocks")

    def list_filters(self) -> List[Dict[str, object]]:
        return self._read("filters")

    def upsert_filter(self, payload: Mapping[str, object]) -> Dict[str, object]:
        key = payload.get("key")
        if not isinstance(key, str) or not key.strip():
            raise ValueError("key is required")
        record = Filter.from_dict(payload).to_dict()
        with self._lock:
            filters = [item for item in self._read("filters") if item.get("key") != record["key"]]
            filters.append(record)
            self._write("filters", filters)
        return record

    def snapshot(self) -> CatalogSnapshot:
        with self._lock:
            return CatalogSnapshot.build(
                profiles=self.list_profiles(),
                blueprints=self.list_blueprints(),
                blocks=self.list_blocks(),
                filters=self.list_filters(),
            )

    def _check_block_keys(self, keys: Iterable[str]) -> None:
        unknown = self.snapshot().unknown_block_keys(keys)
        if unknown:
            raise ValueError(f"Unknown block keys: {', '.join(unknown)}")

    # ------------------------------------------------------------------
    # User blueprints
    # ------------------------------------------------------------------
    def _with_latest(self, blueprint: Dict[str, object]) -> Dict[str, object]:
        latest = self.get_user_blueprint_latest_version(str(blueprint["id"])) or {}
        return {
            **blueprint,
            "currentVersion": latest.get("version", 0),
            "blocks": latest.get("blocks", []),
            "constraints": latest.get("constraints", []),
        }

    def _append_version(self, blueprint_id: str, blocks: List[str], constraints: List[str]) -> Dict[str, object]:
        versions = self.list_user_blueprint_versions(blueprint_id)
        record = {
            "id": _new_id(),
            "blueprintId": blueprint_id,
            "version": (versions[-1]["version"] + 1) if versions else 1,
            "blocks": blocks,
            "constraints": constraints,
            "createdAt": self._timestamp(),
        }
        return self._insert("blueprint_versions", record)

    def list_user_blueprints(self, user_id: Optional[str]) -> List[Dict[str, object]]:
        with self._lock:
            owned = [bp for bp in self._read("user_blueprints") if bp.get("userId") == user_id]
            return [self._with_latest(bp) for bp in owned]

    def count_user_blueprints(self, user_id: Optional[str]) -> int:
        return sum(1 for bp in self._read("user_blueprints") if bp.get("userId") == user_id)

    def get_user_blueprint(self, blueprint_id: str) -> Optional[Dict[str, object]]:
        with self._lock:
            blueprint = self._find("user_blueprints", blueprint_id)
            return self._with_latest(blueprint) if blueprint else None

    def get_user_blueprint_latest_version(self, blueprint_id: str) -> Optional[Dict[str, object]]:
        versions = self.list_user_blueprint_versions(blueprint_id)
        return versions[-1] if versions else None

    def list_user_blueprint_versions(self, blueprint_id: str) -> List[Dict[str, object]]:
        versions = [v for v in self._read("blueprint_versions") if v.get("blueprintId") == blueprint_id]
        return sorted(versions, key=lambda item: item["version"])

    def create_user_blueprint(self, user_id: Optional[str], payload: Mapping[str, object]) -> Dict[str, object]:
        name = payload.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValueError("name is required")
        blocks = _string_list(payload.get("blocks"), "blocks")
        if not blocks:
            raise ValueError("blocks must contain at least one block key")
        constraints = _string_list(payload.get("constraints"), "constraints")

        now = self._timestamp()
        record = {
            "id": _new_id(),
            "userId": user_id,
            "name": name.strip(),
            "description": str(payload.get("description") or ""),
            "category": str(payload.get("category") or "custom"),
            "tags": _string_list(payload.get("tags"), "tags"),
            "compatibleProfiles": _string_list(payload.get("compatibleProfiles"), "compatibleProfiles"),
            "isActive": bool(payload.get("isActive", True)),
            "createdAt": now,
            "updatedAt": now,
        }
        with self._lock:
            self._check_block_keys(blocks)
            self._insert("user_blueprints", record)
            self._append_version(record["id"], blocks, constraints)
            return self._with_latest(record)

    def update_user_blueprint(self, blueprint_id: str, payload: Mapping[str, object]) -> Dict[str, object]:
        """Update metadata and, when blocks or constraints are given, append a version."""

        with self._lock:
            records = self._read("user_blueprints")
            record = next((item for item in records if item.get("id") == blueprint_id), None)
            if record is None:
                raise NotFoundError(f"User blueprint not found: {blueprint_id}")

            for field_name in USER_BLUEPRINT_FIELDS:
                if field_name not in payload:
                    continue
                value = payload[field_name]
                if field_name in {"tags", "compatibleProfiles"}:
                    value = _string_list(value, field_name)
                elif field_name == "isActive":
                    value = bool(value)
                elif field_name == "name":
                    if not isinstance(value, str) or not value.strip():
                        raise ValueError("name must be a non-empty string")
                    value = value.strip()
                else:
                    value = str(value or "")
                record[field_name] = value

            if "blocks" in payload or "constraints" in payload:
                latest = self.get_user_blueprint_latest_version(blueprint_id) or {}
                blocks = _string_list(payload["blocks"], "blocks") if "blocks" in payload else list(latest.get("blocks", []))
                if not blocks:
                    raise ValueError("blocks must contain at least one block key")
                constraints = (
                    _string_list(payload["constraints"], "constraints")
                    if "constraints" in payload
                    else list(latest.get("constraints", []))
                )
                self._check_block_keys(blocks)
                self._append_version(blueprint_id, blocks, constraints)

            record["updatedAt"] = self._timestamp()
            self._write("user_blueprints", records)
            return self._with_latest(record)

    def duplicate_user_blueprint(self, blueprint_id: str, user_id: Optional[str]) -> Dict[str, object]:
        with self._lock:
            source = self.get_user_blueprint(blueprint_id)
            if source is None:
                raise NotFoundError(f"User blueprint not found: {blueprint_id}")
            payload = {field_name: source.get(field_name) for field_name in USER_BLUEPRINT_FIELDS}
            payload.update(
                name=f"{source['name']} (Copy)",
                blocks=source["blocks"],
                constraints=source["constraints"],
            )
            return self.create_user_blueprint(user_id, payload)

    def delete_user_blueprint(self, blueprint_id: str) -> None:
        with self._lock:
            records = self._read("user_blueprints")
            remaining = [item for item in records if item.get("id") != blueprint_id]
            if len(remaining) == len(records):
                raise NotFoundError(f"User blueprint not found: {blueprint_id}")
            self._write("user_blueprints", remaining)
            versions = [v for v in self._read("blueprint_versions") if v.get("blueprintId") != blueprint_id]
            self._write("blueprint_versions", versions)

    # ------------------------------------------------------------------
    # Filter presets
    # ------------------------------------------------------------------
    def _preset_fields(self, payload: Mapping[str, object], partial: bool = False) -> Dict[str, object]:
        fields: Dict[str, object] = {}
        if "name" in payload or not partial:
            name = payload.get("name")
            if not isinstance(name, str) or not name.strip():
                raise ValueError("name is required")
            fields["name"] = name.strip()
        if "filters" in payload or not partial:
            filters = payload.get("filters", {})
            if not isinstance(filters, dict) or not all(
                isinstance(key, str) and isinstance(value, str) for key, value in filters.items()
            ):
                raise ValueError("filters must map filter keys to string values")
            fields["filters"] = dict(filters)
        for field_name in ("description", "profileId"):
            if field_name in payload or not partial:
                fields[field_name] = str(payload.get(field_name) or "")
        if "isDefault" in payload or not partial:
            fields["isDefault"] = bool(payload.get("isDefault", False))
        return fields

    def list_filter_presets(self, user_id: str) -> List[Dict[str, object]]:
        return [preset for preset in self._read("filter_presets") if preset.get("userId") == user_id]

    def get_filter_preset(self, preset_id: str) -> Optional[Dict[str, object]]:
        return self._find("filter_presets", preset_id)

    def create_filter_preset(self, user_id: str, payload: Mapping[str, object]) -> Dict[str, object]:
        now = self._timestamp()
        record = {"id": _new_id(), "userId": user_id, **self._preset_fields(payload), "createdAt": now, "updatedAt": now}
        return self._insert("filter_presets", record)

    def update_filter_preset(self, preset_id: str, user_id: str, payload: Mapping[str, object]) -> Optional[Dict[str, object]]:
        """Apply the given fields; ``None`` when the preset is missing or owned by someone else."""

        fields = self._preset_fields(payload, partial=True)
        with self._lock:
            presets = self._read("filter_presets")
            record = next((item for item in presets if item.get("id") == preset_id and item.get("userId") == user_id), None)
            if record is None:
                return None
            record.update(fields, updatedAt=self._timestamp())
            self._write("filter_presets", presets)
            return record

    def delete_filter_preset(self, preset_id: str, user_id: str) -> bool:
        with self._lock:
            presets = self._read("filter_presets")
            remaining = [item for item in presets if not (item.get("id") == preset_id and item.get("userId") == user_id)]
            if len(remaining) == len(presets):
                return False
            self._write("filter_presets", remaining)
            return True

    # ------------------------------------------------------------------
    # LoRA models and versions
    # ------------------------------------------------------------------
    def create_lora_model(self, user_id: Optional[str], name: str, base_model: str = "sdxl_1.0") -> Dict[str, object]:
        if not name or not name.strip():
            raise ValueError("LoRA model name is required")
        record = {
            "id": _new_id(),
            "userId": user_id,
            "name": name.strip(),
            "baseModel": base_model,
            "createdAt": self._timestamp(),
        }
        return self._insert("lora_models", record)

    def get_lora_model(self, model_id: str) -> Optional[Dict[str, object]]:
        return self._find("lora_models", model_id)

    def create_lora_version(self, model_id: str) -> Dict[str, object]:
        with self._lock:
            if self.get_lora_model(model_id) is None:
                raise NotFoundError(f"LoRA model not found: {model_id}")
            existing = [v for v in self._read("lora_versions") if v.get("loraModelId") == model_id]
            record = {
                "id": _new_id(),
                "loraModelId": model_id,
                "version": len(existing) + 1,
                "artifactUrl": None,
                "status": "pending",
                "createdAt": self._timestamp(),
            }
            return self._insert("lora_versions", record)

    def get_lora_version(self, version_id: str) -> Optional[Dict[str, object]]:
        return self._find("lora_versions", version_id)

    def mark_lora_version_trained(self, version_id: str, artifact_url: str) -> Dict[str, object]:
        with self._lock:
            versions = self._read("lora_versions")
            record = next((item for item in versions if item.get("id") == version_id), None)
            if record is None:
                raise NotFoundError(f"LoRA version not found: {version_id}")
            record.update(artifactUrl=artifact_url, status="trained")
            self._write("lora_versions", versions)
            return record

    # ------------------------------------------------------------------
    # Users and plans
    # ------------------------------------------------------------------
    def get_user(self, user_id: str) -> Optional[Dict[str, object]]:
        return self._find("users", user_id)

    def upsert_user(self, user_id: str, plan: Optional[str] = None, is_admin: Optional[bool] = None) -> Dict[str, object]:
        if plan is not None and plan not in PLANS:
            raise ValueError(f"plan must be one of {sorted(PLANS)}")
        with self._lock:
            users = self._read("users")
            record = next((item for item in users if item.get("id") == user_id), None)
            if record is None:
                record = {"id": user_id, "plan": "free", "isAdmin": False, "createdAt": self._timestamp()}
                users.append(record)
            if plan is not None:
                record["plan"] = plan
            if is_admin is not None:
                record["isAdmin"] = bool(is_admin)
            self._write("users", users)
            return record

    # ------------------------------------------------------------------
    # Generated prompts and versions
    # ------------------------------------------------------------------
    def create_generated_prompt(self, payload: Mapping[str, object]) -> Dict[str, object]:
        record = {
            "id": _new_id(),
            "userId": payload.get("userId"),
            "profileId": payload.get("profileId"),
            "blueprintId": payload.get("blueprintId"),
            "userBlueprintId": payload.get("userBlueprintId"),
            "seed": payload.get("seed"),
            "input": dict(payload.get("input") or {}),
            "appliedFilters": dict(payload.get("appliedFilters") or {}),
            "compiledPrompt": payload.get("compiledPrompt", ""),
            "metadata": dict(payload.get("metadata") or {}),
            "score": payload.get("score", 0),
            "warnings": list(payload.get("warnings") or []),
            "createdAt": self._timestamp(),
        }
        return self._insert("generated_prompts", record)

    def get_generated_prompt(self, prompt_id: str) -> Optional[Dict[str, object]]:
        return self._find("generated_prompts", prompt_id)

    def list_history(self, user_id: Optional[str], limit: int = 50) -> List[Dict[str, object]]:
        prompts = [item for item in self._read("generated_prompts") if item.get("userId") == user_id]
        prompts.sort(key=lambda item: item.get("createdAt", ""), reverse=True)
        return prompts[:limit]

    def save_prompt_version(self, prompt_id: str) -> Dict[str, object]:
        """Snapshot the prompt's compiled text as the next numbered version."""

        with self._lock:
            prompt = self.get_generated_prompt(prompt_id)
            if prompt is None:
                raise NotFoundError(f"Prompt not found: {prompt_id}")
            record = {
                "id": _new_id(),
                "generatedPromptId": prompt_id,
                "version": len(self.list_prompt_versions(prompt_id)) + 1,
                "compiledPrompt": prompt.get("compiledPrompt", ""),
                "metadata": dict(prompt.get("metadata") or {}),
                "createdAt": self._timestamp(),
            }
            return self._insert("prompt_versions", record)

    def list_prompt_versions(self, prompt_id: str) -> List[Dict[str, object]]:
        versions = [v for v in self._read("prompt_versions") if v.get("generatedPromptId") == prompt_id]
        return sorted(versions, key=lambda item: item["version"])

    # ------------------------------------------------------------------
    # Usage accounting
    # ------------------------------------------------------------------
    def log_usage(self, user_id: str, kind: str, metadata: Optional[Mapping[str, object]] = None) -> Dict[str, object]:
        record = {
            "id": _new_id(),
            "userId": user_id,
            "kind": kind,
            "metadata": dict(metadata or {}),
            "createdAt": self._timestamp(),
        }
        return self._insert("usage", record)

    def count_usage_today(self, user_id: str, kind: str) -> int:
        today = self._clock().date().isoformat()
        return sum(
            1
            for item in self._read("usage")
            if item.get("userId") == user_id and item.get("kind") == kind and str(item.get("createdAt", "")).startswith(today)
        )
