"""Service layer helpers."""

from .chart_layers import BoxAnnotation, ChartSpec, LineAnnotation, build_chart_spec, level_role
from .chart_url import ChartRenderer, make_chart_url, to_quickchart_config
from .precision import format_price, get_price_precision, round_price

__all__ = [
    "BoxAnnotation",
    "ChartRenderer",
    "ChartSpec",
    "LineAnnotation",
    "build_chart_spec",
    "format_price",
    "get_price_precision",
    "level_role",
    "make_chart_url",
    "round_price",
    "to_quickchart_config",
]
