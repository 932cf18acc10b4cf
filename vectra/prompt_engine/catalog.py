"""Immutable catalog snapshot consumed by the compiler."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Union

from .models import Block, Blueprint, Filter, Profile

EntityPayload = Union[Mapping[str, object], Profile, Blueprint, Block, Filter]


def _coerce(items: Iterable[EntityPayload], model):
    for item in items or []:
        yield item if isinstance(item, model) else model.from_dict(item)


@dataclass(frozen=True)
class CatalogSnapshot:
    """Read-only view of profiles, blueprints, blocks, and filters for one request.

    Profiles and blueprints are keyed by id, blocks and filters by key. Filter
    iteration order follows the order the catalog supplied them in.
    """

    profiles: Mapping[str, Profile] = field(default_factory=dict)
    blueprints: Mapping[str, Blueprint] = field(default_factory=dict)
    blocks: Mapping[str, Block] = field(default_factory=dict)
    filters: Mapping[str, Filter] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        profiles: Iterable[EntityPayload] = (),
        blueprints: Iterable[EntityPayload] = (),
        blocks: Iterable[EntityPayload] = (),
        filters: Iterable[EntityPayload] = (),
    ) -> "CatalogSnapshot":
        return cls(
            profiles=MappingProxyType({p.id: p for p in _coerce(profiles, Profile)}),
            blueprints=MappingProxyType({b.id: b for b in _coerce(blueprints, Blueprint)}),
            blocks=MappingProxyType({b.key: b for b in _coerce(blocks, Block)}),
            filters=MappingProxyType({f.key: f for f in _coerce(filters, Filter)}),
        )

    def with_blueprint(self, blueprint: EntityPayload) -> "CatalogSnapshot":
        """Return a snapshot that also resolves ``blueprint`` (e.g. a user-authored one)."""

        if not isinstance(blueprint, Blueprint):
            blueprint = Blueprint.from_dict(blueprint)
        merged = dict(self.blueprints)
        merged[blueprint.id] = blueprint
        return CatalogSnapshot(
            profiles=self.profiles,
            blueprints=MappingProxyType(merged),
            blocks=self.blocks,
            filters=self.filters,
        )

    def profile(self, profile_id: str) -> Optional[Profile]:
        return self.profiles.get(profile_id)

    def blueprint(self, blueprint_id: str) -> Optional[Blueprint]:
        return self.blueprints.get(blueprint_id)

    def premium_filter_keys(self) -> set:
        return {key for key, item in self.filters.items() if item.is_premium}

    def unknown_block_keys(self, keys: Iterable[str]) -> list:
        return [key for key in keys if key not in self.blocks]
