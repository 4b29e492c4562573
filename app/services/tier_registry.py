"""Throttle tier registry.

Tiers are loaded once at process start and never mutated afterwards. Every
tier is validated at load time; a malformed table raises
``ConfigurationError`` so the process refuses to start.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Any, Iterator, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_TIER_NAME = "default"


class TierConfig(BaseModel):
    """Raw tier definition as it appears in configuration."""

    model_config = ConfigDict(extra="forbid", strict=True)

    window_ms: int = Field(..., gt=0, description="Window length in milliseconds")
    limit: int = Field(..., gt=0, description="Hits allowed per window")
    block_duration_ms: int | None = Field(
        None,
        gt=0,
        description="Block length once the limit is exceeded (defaults to window_ms)",
    )


@dataclass(frozen=True)
class ThrottleTier:
    """Named (window, limit, block duration) triple applied to a class of routes."""

    name: str
    window_ms: int
    limit: int
    block_duration_ms: int

    def with_overrides(
        self,
        *,
        limit: int | None = None,
        window_ms: int | None = None,
        block_duration_ms: int | None = None,
    ) -> "ThrottleTier":
        """Return a route-local copy with the given values replaced.

        When only the window is overridden the block duration follows it,
        mirroring how tiers default ``block_duration_ms`` to ``window_ms``.
        """

        if limit is None and window_ms is None and block_duration_ms is None:
            return self

        new_window = window_ms if window_ms is not None else self.window_ms
        if block_duration_ms is not None:
            new_block = block_duration_ms
        elif window_ms is not None:
            new_block = window_ms
        else:
            new_block = self.block_duration_ms

        return replace(
            self,
            window_ms=new_window,
            limit=limit if limit is not None else self.limit,
            block_duration_ms=new_block,
        )


class TierRegistry:
    """Immutable mapping of tier name to ``ThrottleTier``.

    Iteration order follows the configuration order, which is also the
    tie-breaker for path auto-matching.
    """

    def __init__(self, tiers: Mapping[str, ThrottleTier]) -> None:
        if DEFAULT_TIER_NAME not in tiers:
            raise ConfigurationError(
                code="throttle_default_tier_missing",
                message=f"Throttle configuration must define a '{DEFAULT_TIER_NAME}' tier",
            )
        self._tiers: Mapping[str, ThrottleTier] = MappingProxyType(dict(tiers))

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "TierRegistry":
        """Validate raw configuration and build the registry.

        Args:
            mapping: Tier name -> {window_ms, limit, block_duration_ms?}.

        Returns:
            TierRegistry: Validated, immutable registry.

        Raises:
            ConfigurationError: If a tier is malformed or ``default`` is missing.
        """

        if not isinstance(mapping, Mapping) or not mapping:
            raise ConfigurationError(
                code="throttle_tiers_missing",
                message="Throttle configuration must be a non-empty mapping of tiers",
            )

        tiers: dict[str, ThrottleTier] = {}
        for name, raw in mapping.items():
            if not isinstance(name, str) or not name.strip():
                raise ConfigurationError(
                    code="throttle_tier_invalid",
                    message="Throttle tier names must be non-empty strings",
                    details={"field": repr(name)},
                )
            try:
                cfg = TierConfig.model_validate(raw)
            except ValidationError as exc:
                first = exc.errors()[0]
                raise ConfigurationError(
                    code="throttle_tier_invalid",
                    message=f"Invalid throttle tier '{name}': {first['msg']}",
                    details={
                        "tier": name,
                        "field": ".".join(str(p) for p in first["loc"]),
                    },
                ) from exc

            tiers[name] = ThrottleTier(
                name=name,
                window_ms=cfg.window_ms,
                limit=cfg.limit,
                block_duration_ms=cfg.block_duration_ms or cfg.window_ms,
            )

        registry = cls(tiers)
        logger.info(
            "throttle.tiers_loaded",
            extra={
                "tiers": {
                    t.name: {"window_ms": t.window_ms, "limit": t.limit}
                    for t in registry
                },
            },
        )
        return registry

    @property
    def default(self) -> ThrottleTier:
        return self._tiers[DEFAULT_TIER_NAME]

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self._tiers)

    def get(self, name: str | None) -> ThrottleTier | None:
        if name is None:
            return None
        return self._tiers.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tiers

    def __iter__(self) -> Iterator[ThrottleTier]:
        return iter(self._tiers.values())

    def __len__(self) -> int:
        return len(self._tiers)

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return f"TierRegistry(names={list(self._tiers)})"
