"""Stateful compiler facade for callers that hold one long-lived compiler.

The HTTP layer builds a fresh :class:`CompileContext` per request instead.
This facade exists for scripts and embedding code that prefer the
``set_data`` / ``set_active_lora`` / ``compile`` call style; each ``compile``
still goes through the pure :func:`compile_prompt` with a context built from
the current facade state.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Mapping, Optional, Sequence, Union

from .catalog import CatalogSnapshot
from .character_pack import DEFAULT_LORA_PLATFORMS, CharacterPack, build_character_pack
from .cinematic import CinematicSettings
from .compiler import CompileContext, CompileOptions, compile_prompt, generate_seed
from .constraints import conflict_rules_from_config
from .models import Blueprint, CompileInput, CompileResult, LoraActivation
from .scoring import ScoringPolicy

logger = logging.getLogger(__name__)

InputPayload = Union[CompileInput, Mapping[str, object]]


def options_from_config(config: Optional[Mapping[str, object]]) -> CompileOptions:
    """Translate the ``scoring``, ``conflicts`` and ``lora`` config sections."""

    if not config:
        return CompileOptions()
    lora_section = config.get("lora") or {}
    platforms = lora_section.get("supported_platforms") or DEFAULT_LORA_PLATFORMS
    return CompileOptions(
        scoring=ScoringPolicy.from_config(config),
        conflict_rules=conflict_rules_from_config(config.get("conflicts") or []),
        lora_platforms=tuple(str(item) for item in platforms),
    )


def _as_input(payload: InputPayload) -> CompileInput:
    return payload if isinstance(payload, CompileInput) else CompileInput.from_dict(payload)


class PromptCompiler:
    """Facade keeping catalog data plus the request-scoped LoRA/user blueprint.

    Call :meth:`reset_request_state` before each unrelated request so an
    earlier caller's LoRA or user blueprint cannot leak into the next compile.
    """

    def __init__(self, options: Optional[CompileOptions] = None) -> None:
        self.options = options or CompileOptions()
        self._catalog = CatalogSnapshot()
        self._user_blueprints: Dict[str, Blueprint] = {}
        self._active_lora: Optional[LoraActivation] = None

    @classmethod
    def from_config(cls, config: Optional[Mapping[str, object]]) -> "PromptCompiler":
        return cls(options_from_config(config))

    @property
    def catalog(self) -> CatalogSnapshot:
        snapshot = self._catalog
        for blueprint in self._user_blueprints.values():
            snapshot = snapshot.with_blueprint(blueprint)
        return snapshot

    @property
    def active_lora(self) -> Optional[LoraActivation]:
        return self._active_lora

    def set_data(self, profiles: Iterable, blueprints: Iterable, blocks: Iterable, filters: Iterable) -> None:
        self._catalog = CatalogSnapshot.build(profiles, blueprints, blocks, filters)
        logger.debug(
            "Catalog refreshed: %d profiles, %d blueprints, %d blocks, %d filters",
            len(self._catalog.profiles),
            len(self._catalog.blueprints),
            len(self._catalog.blocks),
            len(self._catalog.filters),
        )

    def register_user_blueprint(self, blueprint: Union[Blueprint, Mapping[str, object]]) -> Blueprint:
        if not isinstance(blueprint, Blueprint):
            blueprint = Blueprint.from_dict({**blueprint, "isUser": True})
        self._user_blueprints[blueprint.id] = blueprint
        return blueprint

    def set_active_lora(self, activation: Union[None, LoraActivation, Mapping[str, object]]) -> None:
        if activation is not None and not isinstance(activation, LoraActivation):
            activation = LoraActivation.from_dict(activation)
        self._active_lora = activation

    def reset_request_state(self) -> None:
        self._active_lora = None
        self._user_blueprints.clear()

    def generate_seed(self, compile_input: InputPayload) -> str:
        return generate_seed(_as_input(compile_input))

    def generate_character_pack(self, compile_input: InputPayload, platform: str) -> CharacterPack:
        if self._active_lora is None:
            raise ValueError("No active LoRA to describe")
        return build_character_pack(_as_input(compile_input), self._active_lora, platform)

    def compile(
        self,
        compile_input: InputPayload,
        *,
        cinematic: Optional[CinematicSettings] = None,
        gems: Sequence[str] = (),
        target_platform: Optional[str] = None,
    ) -> CompileResult:
        context = CompileContext(
            input=_as_input(compile_input),
            active_lora=self._active_lora,
            cinematic=cinematic,
            gems=tuple(gems),
            target_platform=target_platform,
        )
        return compile_prompt(context, self.catalog, self.options)
