from __future__ import annotations

import json
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from _helpers import make_candles, make_settings
from marketiq.app.services.chart_layers import build_chart_spec
from marketiq.app.services.chart_url import ChartRenderer, make_chart_url, to_quickchart_config
from marketiq.errors import ChartServiceUnavailable
from marketiq.schemas import Level, Zone


def _spec(count: int = 30):
    return build_chart_spec(
        "BTCUSDT",
        "H4",
        make_candles(count),
        [Zone(kind="demand", low=110, high=112)],
        [Level(label="target", price=114)],
    )


def test_quickchart_config_carries_candles_and_annotations():
    config = to_quickchart_config(_spec())

    assert config["type"] == "candlestick"
    assert len(config["data"]["datasets"][0]["data"]) == 30
    annotations = config["options"]["plugins"]["annotation"]["annotations"]
    assert set(annotations) == {"zone1", "line1"}
    assert annotations["zone1"]["yMin"] == 110
    assert annotations["line1"]["yMin"] == annotations["line1"]["yMax"] == 114


def test_make_chart_url_encodes_config():
    url = make_chart_url({"type": "line"}, base_url="https://quickchart.io", width=600, height=300)
    parts = urlsplit(url)
    query = parse_qs(parts.query)

    assert parts.netloc == "quickchart.io"
    assert parts.path == "/chart"
    assert query["width"] == ["600"]
    assert json.loads(query["c"][0]) == {"type": "line"}


@pytest.mark.asyncio
async def test_small_chart_without_key_renders_as_get_url():
    renderer = ChartRenderer(make_settings(chart_service_url="https://quickchart.io"))
    url = await renderer.render(_spec())
    assert url.startswith("https://quickchart.io/chart?version=4")


@pytest.mark.asyncio
async def test_key_uses_create_endpoint():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"success": True, "url": "https://quickchart.io/chart/render/abc"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        renderer = ChartRenderer(make_settings(quickchart_api_key="secret"), client=client)
        url = await renderer.render(_spec())

    assert url == "https://quickchart.io/chart/render/abc"
    assert seen["path"] == "/chart/create"
    assert seen["body"]["key"] == "secret"
    assert seen["body"]["chart"]["type"] == "candlestick"


@pytest.mark.asyncio
async def test_create_failure_raises_chart_unavailable():
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(502))) as client:
        renderer = ChartRenderer(make_settings(quickchart_api_key="secret"), client=client)
        with pytest.raises(ChartServiceUnavailable):
            await renderer.render(_spec())


@pytest.mark.asyncio
async def test_empty_series_cannot_render():
    renderer = ChartRenderer(make_settings())
    with pytest.raises(ChartServiceUnavailable):
        await renderer.render(build_chart_spec("X", "H1", []))
