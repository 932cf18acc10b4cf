"""Request body validation for the HTTP API."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from vectra.prompt_engine.cinematic import CinematicSettings
from vectra.prompt_engine.models import CompileInput

TEXT_FIELDS = ("subject", "context", "items", "environment", "restrictions")
MAX_LORA_WEIGHT = 2.0


class RequestValidationError(ValueError):
    """Malformed request body; ``details`` lists every offending field."""

    def __init__(self, message: str, details: List[Dict[str, object]]):
        super().__init__(message)
        self.details = details


@dataclass(frozen=True)
class GenerateRequest:
    profile_id: str
    blueprint_id: str = ""
    user_blueprint_id: str = ""
    filters: Mapping[str, str] = field(default_factory=dict)
    seed: str = ""
    subject: str = ""
    context: str = ""
    items: str = ""
    environment: str = ""
    restrictions: str = ""
    lora_version_id: str = ""
    lora_weight: Optional[float] = None
    target_platform: str = ""
    cinematic: Optional[CinematicSettings] = None
    gems: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, payload: object) -> "GenerateRequest":
        if not isinstance(payload, Mapping):
            raise RequestValidationError("Invalid request", [{"path": [], "message": "Body must be a JSON object"}])

        details: List[Dict[str, object]] = []

        def fail(path: str, message: str) -> None:
            details.append({"path": [path], "message": message})

        def optional_text(name: str) -> str:
            value = payload.get(name)
            if value is None:
                return ""
            if not isinstance(value, str):
                fail(name, "Expected string")
                return ""
            return value

        profile_id = optional_text("profileId")
        if not profile_id:
            fail("profileId", "Required")
        blueprint_id = optional_text("blueprintId")
        user_blueprint_id = optional_text("userBlueprintId")
        if not blueprint_id and not user_blueprint_id:
            fail("blueprintId", "Either blueprintId or userBlueprintId is required")

        filters = payload.get("filters") or {}
        if not isinstance(filters, Mapping):
            fail("filters", "Expected object")
            filters = {}
        for key, value in filters.items():
            if not isinstance(value, str):
                fail(f"filters.{key}", "Expected string")

        lora_weight = payload.get("loraWeight")
        if lora_weight is not None:
            if isinstance(lora_weight, bool) or not isinstance(lora_weight, (int, float)):
                fail("loraWeight", "Expected number")
                lora_weight = None
            elif not 0 < lora_weight <= MAX_LORA_WEIGHT:
                fail("loraWeight", f"Must be greater than 0 and at most {MAX_LORA_WEIGHT}")
                lora_weight = None

        gems = payload.get("geminiGems") or []
        if not isinstance(gems, list) or not all(isinstance(item, str) for item in gems):
            fail("geminiGems", "Expected list of strings")
            gems = []

        cinematic = None
        if payload.get("cinematicSettings"):
            try:
                cinematic = CinematicSettings.from_dict(payload["cinematicSettings"])
            except ValueError as exc:
                fail("cinematicSettings", str(exc))

        texts = {name: optional_text(name) for name in TEXT_FIELDS}
        seed = optional_text("seed")
        lora_version_id = optional_text("loraVersionId")
        target_platform = optional_text("targetPlatform")

        if details:
            raise RequestValidationError("Invalid request", details)

        return cls(
            profile_id=profile_id,
            blueprint_id=blueprint_id,
            user_blueprint_id=user_blueprint_id,
            filters=dict(filters),
            seed=seed,
            lora_version_id=lora_version_id,
            lora_weight=float(lora_weight) if lora_weight is not None else None,
            target_platform=target_platform,
            cinematic=cinematic,
            gems=tuple(gems),
            **texts,
        )

    def to_compile_input(self, blueprint_id: str) -> CompileInput:
        return CompileInput(
            profile_id=self.profile_id,
            blueprint_id=blueprint_id,
            filters=dict(self.filters),
            seed=self.seed,
            subject=self.subject,
            context=self.context,
            items=self.items,
            environment=self.environment,
            restrictions=self.restrictions,
        )

    def input_summary(self) -> Dict[str, str]:
        return {name: getattr(self, name) for name in TEXT_FIELDS}
