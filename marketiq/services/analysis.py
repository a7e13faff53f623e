"""End-to-end analysis pipeline.

``analyze`` gates on the user's quota, loads candles through the market-data
chain, generates (or replays from cache) the prose analysis with its zone
block, renders the annotated chart and only then charges the quota.  Failures
surface as :class:`AnalysisError` subclasses with a stable ``code``.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Sequence

from ..app.services.chart_layers import build_chart_spec
from ..app.services.chart_url import ChartRenderer
from ..config import Settings, get_settings
from ..errors import AnalysisError, ChartServiceUnavailable
from ..lib.detached import drain, spawn_detached
from ..lib.fingerprint import generation_fingerprint
from ..lib.kv_store import KeyValueStore, build_store
from ..logging_setup import format_log_context
from ..providers.base import Candle, GenerationRequest, close_http_client
from ..providers.registry import build_generation_registry, build_market_registry
from ..schemas import AnalyzeRequest, AnalyzeResponse, ErrorBody, ImageAnalyzeRequest, Level, QuotaStatus, Zone
from ..telemetry import record_analysis_duration, record_chart_failure
from .cache import ResponseCache
from .generation import GenerationEngine, GenerationResult
from .jobs import JobLedger, JobRecord
from .market_data import MarketDataFetcher
from .news import NewsService
from .prompts import build_analysis_prompt, build_vision_prompt, market_block, system_prompt
from .quota import QuotaController, QuotaDecision

logger = logging.getLogger(__name__)


class AnalysisService:
    def __init__(
        self,
        *,
        store: KeyValueStore,
        fetcher: MarketDataFetcher,
        engine: GenerationEngine,
        quota: QuotaController,
        renderer: ChartRenderer,
        settings: Settings | None = None,
        news: NewsService | None = None,
        jobs: JobLedger | None = None,
        generation_cache: ResponseCache | None = None,
        detach_cache_writes: bool = True,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self.fetcher = fetcher
        self.engine = engine
        self.quota = quota
        self.renderer = renderer
        self.news = news
        self.jobs = jobs or JobLedger(store, ttl=self.settings.job_ttl_s)
        self.generation_cache = generation_cache or ResponseCache(
            store, namespace="generation", ttl=self.settings.generation_cache_ttl_s
        )
        self.detach_cache_writes = detach_cache_writes

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "AnalysisService":
        settings = settings or get_settings()
        store = build_store(settings.redis_url)
        fetcher = MarketDataFetcher(
            registry=build_market_registry(settings),
            cache=ResponseCache(store, namespace="market", ttl=settings.market_cache_ttl_s),
            settings=settings,
        )
        news = NewsService(
            ResponseCache(store, namespace="news", ttl=settings.news_cache_ttl_s),
            settings,
            language=settings.analysis_language,
        )
        return cls(
            store=store,
            fetcher=fetcher,
            engine=GenerationEngine(registry=build_generation_registry(settings), settings=settings),
            quota=QuotaController(store, settings=settings),
            renderer=ChartRenderer(settings),
            settings=settings,
            news=news,
        )

    def _language(self, requested: str | None) -> str:
        return requested or self.settings.analysis_language or "en"

    async def analyze(self, request: AnalyzeRequest) -> AnalyzeResponse:
        started = time.perf_counter()
        outcome = "ok"
        admitted = await self._admit(request.user_id, started)
        job = await self._start_job("analysis", request.user_id, request.symbol, request.timeframe)
        try:
            language = self._language(request.language)
            series = await self.fetcher.fetch_series(request.market, request.symbol, request.timeframe)
            block = market_block(series.symbol, series.timeframe, series.candles)
            headlines = await self._headlines(series.symbol, series.timeframe) if request.news else []

            fingerprint = generation_fingerprint(
                market=series.market,
                symbol=series.symbol,
                timeframe=series.timeframe,
                style=request.style,
                risk=request.risk,
                news=request.news,
                summary=block,
                language=language,
                extra="\n".join([request.prompt or "", *headlines]).strip() or None,
            )

            async def generate() -> Dict[str, Any]:
                generation = GenerationRequest(
                    user_prompt=build_analysis_prompt(
                        symbol=series.symbol,
                        timeframe=series.timeframe,
                        style=request.style,
                        risk=request.risk,
                        market_data=block,
                        headlines=headlines,
                        user_prompt=request.prompt,
                    ),
                    system_prompt=system_prompt(language),
                    temperature=self.settings.generation_temperature,
                )
                result = await self.engine.generate(generation, candles=series.candles, language=language)
                return result.to_dict()

            # Unvalidated output with no zones is never replayed.
            payload, cached = await self.generation_cache.get_or_fill(
                fingerprint,
                generate,
                usable=_replayable,
                store_if=_replayable,
                detach_write=self.detach_cache_writes,
            )
            result = GenerationResult.from_dict(payload)

            chart_ref = await self._render_chart(series.symbol, series.timeframe, series.candles, result.zones, result.levels)
            decision = await self._charge(request.user_id, admitted)

            context = {
                "user_id": request.user_id,
                "symbol": series.symbol,
                "timeframe": series.timeframe,
                "market_provider": series.provider,
                "provider": result.provider,
                "zone_source": result.source,
                "cached": cached,
            }
            logger.info("analysis_completed %s", format_log_context(context), extra=context)
            return AnalyzeResponse(
                text=result.text,
                zones=result.zones,
                levels=result.levels,
                chart_ref=chart_ref,
                quota_remaining=decision.remaining(),
                validated=result.validated,
                zone_source=result.source,
                provider=result.provider,
                symbol=series.symbol,
                timeframe=series.timeframe,
                cached=cached,
            )
        except AnalysisError as exc:
            outcome = exc.code
            raise
        except Exception as exc:
            outcome = "internal"
            logger.exception("analysis_failed user_id=%s symbol=%s", request.user_id, request.symbol)
            raise AnalysisError(f"{type(exc).__name__}: {exc}") from exc
        finally:
            if job is not None:
                spawn_detached(self.jobs.finish(job.job_id), name=f"job-finish-{job.job_id}")
            record_analysis_duration(outcome, (time.perf_counter() - started) * 1000.0)

    async def analyze_image(self, request: ImageAnalyzeRequest) -> AnalyzeResponse:
        """Vision analysis of a chart screenshot; candles and a chart only when a symbol is given."""

        started = time.perf_counter()
        outcome = "ok"
        admitted = await self._admit(request.user_id, started)
        job = await self._start_job("vision", request.user_id, request.symbol, request.timeframe)
        try:
            language = self._language(request.language)
            symbol = request.symbol
            candles: List[Candle] = []
            if symbol:
                series = await self.fetcher.fetch_series(None, symbol, request.timeframe)
                symbol, candles = series.symbol, series.candles

            generation = GenerationRequest(
                user_prompt=build_vision_prompt(timeframe=request.timeframe, symbol=symbol, user_prompt=request.prompt),
                system_prompt=system_prompt(language),
                image_url=request.image_url,
                temperature=self.settings.generation_temperature,
            )
            result = await self.engine.generate(generation, candles=candles, language=language)
            chart_ref = None
            if candles and symbol:
                chart_ref = await self._render_chart(symbol, request.timeframe, candles, result.zones, result.levels)
            decision = await self._charge(request.user_id, admitted)

            context = {"user_id": request.user_id, "symbol": symbol, "provider": result.provider, "zone_source": result.source}
            logger.info("image_analysis_completed %s", format_log_context(context), extra=context)
            return AnalyzeResponse(
                text=result.text,
                zones=result.zones,
                levels=result.levels,
                chart_ref=chart_ref,
                quota_remaining=decision.remaining(),
                validated=result.validated,
                zone_source=result.source,
                provider=result.provider,
                symbol=symbol,
                timeframe=request.timeframe,
            )
        except AnalysisError as exc:
            outcome = exc.code
            raise
        except Exception as exc:
            outcome = "internal"
            logger.exception("image_analysis_failed user_id=%s", request.user_id)
            raise AnalysisError(f"{type(exc).__name__}: {exc}") from exc
        finally:
            if job is not None:
                spawn_detached(self.jobs.finish(job.job_id), name=f"job-finish-{job.job_id}")
            record_analysis_duration(outcome, (time.perf_counter() - started) * 1000.0)

    async def _admit(self, user_id: str, started: float) -> QuotaDecision:
        try:
            return await self.quota.check(user_id)
        except AnalysisError as exc:
            record_analysis_duration(exc.code, (time.perf_counter() - started) * 1000.0)
            raise
        except Exception as exc:
            record_analysis_duration("internal", (time.perf_counter() - started) * 1000.0)
            logger.exception("quota_check_failed user_id=%s", user_id)
            raise AnalysisError(f"quota check failed: {type(exc).__name__}: {exc}") from exc

    async def _charge(self, user_id: str, admitted: QuotaDecision) -> QuotaDecision:
        """Record usage after success; a store failure here never discards the finished analysis."""

        try:
            return await self.quota.consume(user_id)
        except Exception:
            logger.exception("quota_consume_failed user_id=%s", user_id)
            return admitted

    async def _start_job(self, kind: str, user_id: str, symbol: str | None, timeframe: str | None) -> JobRecord | None:
        try:
            return await self.jobs.start(kind, user_id, symbol=symbol, timeframe=timeframe)
        except Exception as exc:
            context = {"kind": kind, "user_id": user_id, "error": f"{type(exc).__name__}: {exc}"}
            logger.warning("job_start_failed %s", format_log_context(context), extra=context)
            return None

    async def _headlines(self, symbol: str, timeframe: str) -> List[str]:
        if self.news is None:
            return []
        items = await self.news.headlines(symbol, timeframe)
        return [item.prompt_line() for item in items]

    async def _render_chart(
        self,
        symbol: str,
        timeframe: str,
        candles: Sequence[Candle],
        zones: Sequence[Zone],
        levels: Sequence[Level],
    ) -> str | None:
        spec = build_chart_spec(symbol, timeframe, candles, zones, levels, max_candles=self.settings.chart_candles)
        try:
            return await self.renderer.render(spec)
        except ChartServiceUnavailable as exc:
            record_chart_failure()
            logger.warning("chart_render_failed symbol=%s timeframe=%s error=%s", symbol, timeframe, exc)
            return None

    async def quota_status(self, user_id: str) -> QuotaStatus:
        return await self.quota.status(user_id)

    def error_body(self, exc: AnalysisError, *, user_id: str | None = None) -> ErrorBody:
        """Public error payload; the internal detail is only shown to owners and admins."""

        detail = exc.detail if user_id is not None and self.quota.is_privileged(user_id) else None
        return ErrorBody(error=exc.code, message=exc.public_message, detail=detail)

    async def close(self) -> None:
        await drain()
        await self.store.close()
        await close_http_client()


def _replayable(payload: Any) -> bool:
    if not isinstance(payload, dict) or not (payload.get("validated") or payload.get("source") == "heuristic"):
        return False
    try:
        GenerationResult.from_dict(payload)
    except (TypeError, ValueError):
        logger.warning("generation_cache_entry_invalid")
        return False
    return True


__all__ = ["AnalysisService"]
