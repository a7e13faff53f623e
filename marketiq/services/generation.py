"""Model generation with structured zone extraction.

``generate`` runs the generation chain, then resolves zones from the output:

1. tagged block valid -> zones from the block (``source="schema"``).
2. no tagged block -> keyword heuristics over the prose (``source="heuristic"``).
3. tagged block invalid -> one repair call at repair temperature through the
   same chain; if that also fails the result carries no zones
   (``validated=False, source="none"``).  There is never a second repair.

When a polish order is configured the prose then goes through one copy-edit
chain.  Zones and levels are never taken from the polished text, and any
polish failure keeps the draft.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Sequence

from ..config import Settings, get_settings
from ..errors import AllProvidersFailed, GenerationUnavailable
from ..logging_setup import format_log_context
from ..providers.base import Candle, GenerationRequest
from ..providers.registry import ProviderRegistry
from ..schemas import MAX_ZONES, Level, Zone
from ..telemetry import record_repair_pass, record_validation_outcome
from .fallbacks import ChainResult, FallbackExecutor
from .heuristics import extract_heuristic
from .prompts import REPAIR_SYSTEM_PROMPT, build_polish_prompt, build_repair_prompt, polish_system_prompt
from .validation import strip_zone_block, validate_zone_block

logger = logging.getLogger(__name__)

ZONE_MERGE_TOLERANCE = 0.0015
ZONE_CONTAINMENT_OVERLAP = 0.9


@dataclass(slots=True)
class GenerationResult:
    raw_text: str
    zones: List[Zone] = field(default_factory=list)
    levels: List[Level] = field(default_factory=list)
    validated: bool = False
    repaired: bool = False
    repair_attempted: bool = False
    source: str = "none"
    provider: str | None = None
    validation_error: str | None = None
    polished_text: str | None = None
    polished_by: str | None = None

    @property
    def text(self) -> str:
        return self.polished_text or strip_zone_block(self.raw_text)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["zones"] = [zone.model_dump() for zone in self.zones]
        payload["levels"] = [level.model_dump() for level in self.levels]
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "GenerationResult":
        data = dict(payload)
        data["zones"] = [Zone.model_validate(item) for item in data.get("zones") or []]
        data["levels"] = [Level.model_validate(item) for item in data.get("levels") or []]
        return cls(**data)


def _near(a: float, b: float, tolerance: float) -> bool:
    scale = max(abs(a), abs(b)) or 1.0
    return abs(a - b) / scale <= tolerance


def _mostly_contained(a: Zone, b: Zone) -> bool:
    overlap = min(a.high, b.high) - max(a.low, b.low)
    if overlap <= 0:
        return False
    wider = max(a.high - a.low, b.high - b.low)
    return overlap / wider >= ZONE_CONTAINMENT_OVERLAP


def merge_zones(zones: Sequence[Zone], *, limit: int = MAX_ZONES) -> List[Zone]:
    """Collapse near-identical zones of the same kind and cap the result."""

    merged: List[Zone] = []
    for zone in zones:
        for idx, existing in enumerate(merged):
            if existing.kind != zone.kind:
                continue
            same_bounds = _near(existing.low, zone.low, ZONE_MERGE_TOLERANCE) and _near(
                existing.high, zone.high, ZONE_MERGE_TOLERANCE
            )
            if same_bounds or _mostly_contained(existing, zone):
                confidences = [c for c in (existing.confidence, zone.confidence) if c is not None]
                merged[idx] = Zone(
                    kind=existing.kind,
                    low=min(existing.low, zone.low),
                    high=max(existing.high, zone.high),
                    label=existing.label or zone.label,
                    confidence=max(confidences) if confidences else None,
                )
                break
        else:
            merged.append(zone)
    return merged[:limit]


def dedupe_levels(levels: Sequence[Level]) -> List[Level]:
    seen: set[tuple[str, float]] = set()
    result: List[Level] = []
    for level in levels:
        key = (level.label.strip().lower(), round(level.price, 8))
        if key in seen:
            continue
        seen.add(key)
        result.append(level)
    return result


class GenerationEngine:
    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        settings: Settings | None = None,
        text_order: Sequence[str] | None = None,
        vision_order: Sequence[str] | None = None,
        polish_order: Sequence[str] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.registry = registry
        self.text_order = list(text_order or self.settings.text_provider_order)
        self.vision_order = list(vision_order or self.settings.vision_provider_order)
        self.polish_order = list(self.settings.polish_provider_order if polish_order is None else polish_order)
        self._executor = FallbackExecutor(
            "generation",
            attempt_timeout=self.settings.generation_timeout_s,
            total_budget=self.settings.generation_total_budget_s,
            min_remaining=self.settings.generation_min_remaining_s,
            clock=clock,
        )
        self._polish_executor = FallbackExecutor(
            "polish",
            attempt_timeout=self.settings.polish_timeout_s,
            total_budget=self.settings.generation_total_budget_s,
            clock=clock,
        )

    async def complete(self, request: GenerationRequest) -> ChainResult[str]:
        order = self.vision_order if request.image_url else self.text_order
        return await self._executor.run(self.registry.resolve(order), request)

    async def generate(
        self,
        request: GenerationRequest,
        *,
        candles: Sequence[Candle] = (),
        language: str = "en",
    ) -> GenerationResult:
        try:
            chain = await self.complete(request)
        except AllProvidersFailed as exc:
            context = {"phase": "generation", "error": str(exc)}
            logger.warning("generation_unavailable %s", format_log_context(context), extra=context)
            raise GenerationUnavailable(str(exc)) from exc
        result = await self.resolve_zones(chain.value, provider=chain.provider, candles=candles, language=language)
        if self.polish_order:
            result = await self.polish(result, language=language)
        return result

    async def polish(self, result: GenerationResult, *, language: str = "en") -> GenerationResult:
        draft = result.text.strip()
        if not draft:
            return result
        request = GenerationRequest(
            user_prompt=build_polish_prompt(draft),
            system_prompt=polish_system_prompt(language),
            temperature=self.settings.repair_temperature,
        )
        try:
            chain = await self._polish_executor.run(self.registry.resolve(self.polish_order), request)
        except AllProvidersFailed as exc:
            logger.warning("polish_unavailable error=%s", exc)
            return result
        polished = strip_zone_block(chain.value).strip()
        if polished:
            result.polished_text = polished
            result.polished_by = chain.provider
        return result

    async def resolve_zones(
        self,
        raw_text: str,
        *,
        provider: str | None,
        candles: Sequence[Candle] = (),
        language: str = "en",
    ) -> GenerationResult:
        outcome = validate_zone_block(raw_text)

        if outcome.status == "valid" and outcome.envelope is not None:
            result = GenerationResult(
                raw_text=raw_text,
                zones=outcome.envelope.zones,
                levels=outcome.envelope.levels,
                validated=True,
                source="schema",
                provider=provider,
            )
        elif outcome.status == "absent":
            zones, levels = extract_heuristic(raw_text, candles, language=language)
            result = GenerationResult(
                raw_text=raw_text,
                zones=zones,
                levels=levels,
                validated=False,
                source="heuristic" if (zones or levels) else "none",
                provider=provider,
            )
        else:
            result = await self._repair(raw_text, outcome.error or "invalid block", provider=provider)

        result.zones = merge_zones(result.zones)
        result.levels = dedupe_levels(result.levels)
        record_validation_outcome(result.source)
        return result

    async def _repair(self, raw_text: str, error: str, *, provider: str | None) -> GenerationResult:
        context = {"provider": provider, "error": error}
        logger.info("zone_block_invalid %s", format_log_context(context), extra=context)
        request = GenerationRequest(
            user_prompt=build_repair_prompt(raw_text, error),
            system_prompt=REPAIR_SYSTEM_PROMPT,
            temperature=self.settings.repair_temperature,
        )
        failed = GenerationResult(
            raw_text=raw_text,
            validated=False,
            repair_attempted=True,
            source="none",
            provider=provider,
            validation_error=error,
        )
        try:
            chain = await self._executor.run(self.registry.resolve(self.text_order), request)
        except AllProvidersFailed as exc:
            logger.warning("zone_repair_unavailable error=%s", exc)
            record_repair_pass(False)
            return failed

        repaired = validate_zone_block(chain.value)
        if not repaired.valid or repaired.envelope is None:
            failed.validation_error = repaired.error or "repair output carried no zone block"
            logger.warning("zone_repair_invalid provider=%s error=%s", chain.provider, failed.validation_error)
            record_repair_pass(False)
            return failed

        record_repair_pass(True)
        return GenerationResult(
            raw_text=raw_text,
            zones=repaired.envelope.zones,
            levels=repaired.envelope.levels,
            validated=True,
            repaired=True,
            repair_attempted=True,
            source="repair",
            provider=provider,
        )


__all__ = ["GenerationEngine", "GenerationResult", "dedupe_levels", "merge_zones"]
