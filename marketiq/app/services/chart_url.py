"""QuickChart rendering for annotated candlestick charts."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict
from urllib.parse import urlencode, urlsplit, urlunsplit

import httpx

from ...config import Settings, get_settings
from ...errors import ChartServiceUnavailable
from ...providers.base import get_http_client
from ...telemetry import PROVIDER_LATENCY_MS
from .chart_layers import BoxAnnotation, ChartSpec, LineAnnotation

logger = logging.getLogger(__name__)

CHART_PATH = "/chart"
CREATE_PATH = "/chart/create"
MAX_GET_URL_LENGTH = 16_000
CHARTJS_VERSION = "4"


def _annotation_payload(item: BoxAnnotation | LineAnnotation) -> Dict[str, Any]:
    if isinstance(item, BoxAnnotation):
        return {
            "type": "box",
            "xMin": item.x_min,
            "xMax": item.x_max,
            "yMin": item.y_min,
            "yMax": item.y_max,
            "backgroundColor": item.fill,
            "borderColor": item.border,
            "borderWidth": 1,
            "label": {
                "display": True,
                "content": item.label,
                "position": "center",
                "color": "rgba(255,255,255,0.85)",
                "font": {"size": 10, "weight": "bold"},
            },
        }
    return {
        "type": "line",
        "xMin": item.x_min,
        "xMax": item.x_max,
        "yMin": item.y,
        "yMax": item.y,
        "borderColor": item.color,
        "borderWidth": 2,
        "label": {
            "display": True,
            "content": item.label,
            "position": "start",
            "color": "rgba(255,255,255,0.85)",
            "backgroundColor": "rgba(0,0,0,0.35)",
            "font": {"size": 10},
        },
    }


def to_quickchart_config(spec: ChartSpec) -> Dict[str, Any]:
    """Chart.js (financial + annotation plugins) config for a spec."""

    annotations: Dict[str, Any] = {}
    zone_idx = line_idx = 0
    for item in spec.annotations:
        if isinstance(item, BoxAnnotation):
            zone_idx += 1
            annotations[f"zone{zone_idx}"] = _annotation_payload(item)
        else:
            line_idx += 1
            annotations[f"line{line_idx}"] = _annotation_payload(item)

    data = [{"x": c.timestamp, "o": c.open, "h": c.high, "l": c.low, "c": c.close} for c in spec.series]
    return {
        "type": "candlestick",
        "data": {"datasets": [{"label": f"{spec.symbol} {spec.timeframe}", "data": data}]},
        "options": {
            "parsing": False,
            "plugins": {
                "legend": {"display": False},
                "title": {"display": True, "text": f"{spec.symbol} · {spec.timeframe}"},
                "annotation": {"annotations": annotations},
            },
            "scales": {
                "x": {
                    "type": "time",
                    "time": {"unit": "day" if spec.timeframe == "D1" else "hour"},
                    "ticks": {"maxTicksLimit": 8},
                },
                "y": {"position": "right", "ticks": {"maxTicksLimit": 8}},
            },
        },
    }


def make_chart_url(config: Dict[str, Any], *, base_url: str, width: int = 900, height: int = 520) -> str:
    """Return a GET URL that renders ``config`` as a transparent PNG."""

    params = {
        "version": CHARTJS_VERSION,
        "width": str(width),
        "height": str(height),
        "format": "png",
        "backgroundColor": "transparent",
        "c": json.dumps(config, separators=(",", ":"), ensure_ascii=False),
    }
    query = urlencode(list(params.items()))
    parsed = urlsplit(base_url)
    scheme = parsed.scheme or "https"
    netloc = parsed.netloc or parsed.path
    return urlunsplit((scheme, netloc, CHART_PATH, query, ""))


class ChartRenderer:
    """Turns a ``ChartSpec`` into an image reference; raises :class:`ChartServiceUnavailable`."""

    def __init__(self, settings: Settings | None = None, *, client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings or get_settings()
        self.client = client

    async def render(self, spec: ChartSpec) -> str:
        if not spec.series:
            raise ChartServiceUnavailable("no candles to plot")
        config = to_quickchart_config(spec)
        api_key = (self.settings.quickchart_api_key or "").strip()
        if not api_key:
            url = make_chart_url(
                config,
                base_url=self.settings.chart_service_url,
                width=self.settings.chart_width,
                height=self.settings.chart_height,
            )
            if len(url) <= MAX_GET_URL_LENGTH:
                return url
        return await self._create(config, api_key or None)

    async def _create(self, config: Dict[str, Any], api_key: str | None) -> str:
        body: Dict[str, Any] = {
            "backgroundColor": "transparent",
            "width": self.settings.chart_width,
            "height": self.settings.chart_height,
            "format": "png",
            "version": CHARTJS_VERSION,
            "chart": config,
        }
        if api_key:
            body["key"] = api_key
        http = self.client or await get_http_client()
        started = time.perf_counter()
        try:
            resp = await http.post(
                f"{self.settings.chart_service_url.rstrip('/')}{CREATE_PATH}",
                json=body,
                timeout=self.settings.chart_timeout_s,
            )
            resp.raise_for_status()
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ChartServiceUnavailable(f"chart create failed: {type(exc).__name__}: {exc}") from exc
        finally:
            PROVIDER_LATENCY_MS.labels("quickchart", "chart_create").observe((time.perf_counter() - started) * 1000.0)
        url = payload.get("url") if isinstance(payload, dict) else None
        if not url or (isinstance(payload, dict) and payload.get("success") is False):
            raise ChartServiceUnavailable("chart create returned no url")
        return str(url)


__all__ = ["ChartRenderer", "make_chart_url", "to_quickchart_config"]
