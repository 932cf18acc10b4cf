"""Shared data models for the prompt engine.

- Purpose: define the catalog entities (profiles, blueprints, blocks, filters), the
  request-scoped compile inputs, and the compiled result.
- Assumptions: wire payloads use camelCase keys; bundled YAML presets may use snake_case,
  so ``from_dict`` accepts either spelling.
- Side effects: none; classes are passive containers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

BLOCK_TYPES = {"style", "camera", "layout", "constraint", "postfx", "subject"}
LORA_SYNTAXES = {"angle", "double_colon", "paren"}


def _pick(payload: Mapping[str, object], camel: str, snake: str, default: object = None) -> object:
    if camel in payload:
        return payload[camel]
    return payload.get(snake, default)


def _text(value: object, field_name: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string")
    return value


def _string_tuple(value: object, field_name: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, (list, tuple)):
        raise ValueError(f"{field_name} must be a list of strings")
    for idx, item in enumerate(value):
        if not isinstance(item, str):
            raise ValueError(f"{field_name}[{idx}] must be a string")
    return tuple(value)


@dataclass(frozen=True)
class Profile:
    """Target platform/model descriptor and its formatting rules."""

    id: str
    name: str
    base_prompt: str = ""
    forbidden_patterns: Tuple[str, ...] = ()
    max_length: int = 2000
    capabilities: Tuple[str, ...] = ()
    lora_syntax: str = "angle"
    include_system_prompt: bool = False

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> "Profile":
        lora_syntax = str(_pick(payload, "loraSyntax", "lora_syntax", "angle"))
        if lora_syntax not in LORA_SYNTAXES:
            raise ValueError(f"Profile {payload.get('id')}: loraSyntax must be one of {sorted(LORA_SYNTAXES)}")
        max_length = _pick(payload, "maxLength", "max_length", 2000)
        if isinstance(max_length, bool) or not isinstance(max_length, int) or max_length <= 0:
            raise ValueError(f"Profile {payload.get('id')}: maxLength must be a positive integer")
        return cls(
            id=str(payload.get("id")),
            name=str(payload.get("name") or payload.get("id")),
            base_prompt=_text(_pick(payload, "basePrompt", "base_prompt"), "basePrompt"),
            forbidden_patterns=_string_tuple(_pick(payload, "forbiddenPatterns", "forbidden_patterns"), "forbiddenPatterns"),
            max_length=max_length,
            capabilities=_string_tuple(payload.get("capabilities"), "capabilities"),
            lora_syntax=lora_syntax,
            include_system_prompt=bool(_pick(payload, "includeSystemPrompt", "include_system_prompt", False)),
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "basePrompt": self.base_prompt,
            "forbiddenPatterns": list(self.forbidden_patterns),
            "maxLength": self.max_length,
            "capabilities": list(self.capabilities),
            "loraSyntax": self.lora_syntax,
            "includeSystemPrompt": self.include_system_prompt,
        }


@dataclass(frozen=True)
class Block:
    """A reusable, keyed fragment of prompt text."""

    key: str
    label: str
    template: str
    type: str = "style"

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> "Block":
        block_type = str(payload.get("type") or "style")
        if block_type not in BLOCK_TYPES:
            raise ValueError(f"Block {payload.get('key')}: type must be one of {sorted(BLOCK_TYPES)}")
        return cls(
            key=str(payload.get("key")),
            label=str(payload.get("label") or payload.get("key")),
            template=_text(payload.get("template"), "template"),
            type=block_type,
        )

    def to_dict(self) -> Dict[str, object]:
        return {"key": self.key, "label": self.label, "template": self.template, "type": self.type}


@dataclass(frozen=True)
class Filter:
    """Option group whose selected value maps to an injected text fragment."""

    key: str
    label: str
    options: Tuple[str, ...] = ()
    effect: Mapping[str, str] = field(default_factory=dict)
    schema_type: str = "select"
    is_premium: bool = False

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> "Filter":
        schema = payload.get("schema") or {}
        if not isinstance(schema, Mapping):
            raise ValueError(f"Filter {payload.get('key')}: schema must be an object")
        effect = payload.get("effect") or {}
        if not isinstance(effect, Mapping):
            raise ValueError(f"Filter {payload.get('key')}: effect must be an object")
        options = _string_tuple(schema.get("options"), "schema.options") or tuple(str(k) for k in effect)
        premium = _pick(payload, "isPremium", "is_premium", False)
        return cls(
            key=str(payload.get("key")),
            label=str(payload.get("label") or payload.get("key")),
            options=options,
            effect={str(k): str(v) for k, v in effect.items()},
            schema_type=str(schema.get("type") or "select"),
            # The relational schema stored the flag as an integer column.
            is_premium=bool(premium),
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "key": self.key,
            "label": self.label,
            "schema": {"type": self.schema_type, "options": list(self.options)},
            "effect": dict(self.effect),
            "isPremium": 1 if self.is_premium else 0,
        }


@dataclass(frozen=True)
class Blueprint:
    """Named, ordered template of block references plus constraint rules."""

    id: str
    name: str
    blocks: Tuple[str, ...] = ()
    constraints: Tuple[str, ...] = ()
    category: str = ""
    description: str = ""
    preview_description: str = ""
    is_user: bool = False

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> "Blueprint":
        return cls(
            id=str(payload.get("id")),
            name=str(payload.get("name") or payload.get("id")),
            blocks=_string_tuple(payload.get("blocks"), "blocks"),
            constraints=_string_tuple(payload.get("constraints"), "constraints"),
            category=str(payload.get("category") or ""),
            description=str(payload.get("description") or ""),
            preview_description=str(_pick(payload, "previewDescription", "preview_description") or ""),
            is_user=bool(_pick(payload, "isUser", "is_user", False)),
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "description": self.description,
            "blocks": list(self.blocks),
            "constraints": list(self.constraints),
            "previewDescription": self.preview_description,
            "isUser": self.is_user,
        }


@dataclass(frozen=True)
class LoraActivation:
    """Request-scoped LoRA selection injected as trigger word plus weight."""

    version: str
    weight: float
    trigger_word: str
    model_name: str

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> "LoraActivation":
        trigger = _pick(payload, "triggerWord", "trigger_word")
        if not isinstance(trigger, str) or not trigger.strip():
            raise ValueError("LoRA activation requires a triggerWord")
        weight = payload.get("weight", 1.0)
        if isinstance(weight, bool) or not isinstance(weight, (int, float)):
            raise ValueError("LoRA weight must be a number")
        version = payload.get("version")
        if isinstance(version, Mapping):
            version = version.get("id")
        return cls(
            version=str(version or ""),
            weight=float(weight),
            trigger_word=trigger.strip(),
            model_name=str(_pick(payload, "modelName", "model_name") or "Custom Model"),
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "version": self.version,
            "weight": self.weight,
            "triggerWord": self.trigger_word,
            "modelName": self.model_name,
        }


@dataclass(frozen=True)
class CompileInput:
    """The compile request DTO."""

    profile_id: str
    blueprint_id: str
    filters: Mapping[str, str] = field(default_factory=dict)
    seed: str = ""
    subject: str = ""
    context: str = ""
    items: str = ""
    environment: str = ""
    restrictions: str = ""

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> "CompileInput":
        filters = payload.get("filters") or {}
        if not isinstance(filters, Mapping):
            raise ValueError("filters must be an object of key/value strings")
        for key, value in filters.items():
            if not isinstance(value, str):
                raise ValueError(f"filters.{key} must be a string")
        return cls(
            profile_id=_text(_pick(payload, "profileId", "profile_id"), "profileId"),
            blueprint_id=_text(_pick(payload, "blueprintId", "blueprint_id"), "blueprintId"),
            filters=dict(filters),
            seed=_text(payload.get("seed"), "seed"),
            subject=_text(payload.get("subject"), "subject"),
            context=_text(payload.get("context"), "context"),
            items=_text(payload.get("items"), "items"),
            environment=_text(payload.get("environment"), "environment"),
            restrictions=_text(payload.get("restrictions"), "restrictions"),
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "profileId": self.profile_id,
            "blueprintId": self.blueprint_id,
            "filters": dict(self.filters),
            "seed": self.seed,
            "subject": self.subject,
            "context": self.context,
            "items": self.items,
            "environment": self.environment,
            "restrictions": self.restrictions,
        }


@dataclass
class CompileResult:
    """Compiled prompt with its seed, heuristic score, and warnings."""

    compiled_prompt: str
    seed: str
    score: int
    warnings: List[str] = field(default_factory=list)
    metadata: Dict[str, object] = field(default_factory=dict)
    # Side payloads; both expose ``to_dict`` and are never merged into the prompt text.
    character_pack: Optional[Any] = None
    gem_optimization: Optional[Any] = None

    def to_payload(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "compiledPrompt": self.compiled_prompt,
            "seed": self.seed,
            "score": self.score,
            "warnings": list(self.warnings),
            "metadata": dict(self.metadata),
        }
        if self.character_pack is not None:
            payload["characterPack"] = self.character_pack.to_dict()
        if self.gem_optimization is not None:
            payload["gemOptimization"] = self.gem_optimization.to_dict()
        return payload

