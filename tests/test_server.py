from __future__ import annotations

import pytest

from marketiq.server import DEFAULT_PORT, resolve_port


@pytest.mark.parametrize(
    "raw, expected",
    [(None, DEFAULT_PORT), ("", DEFAULT_PORT), ("8080", 8080), ("abc", DEFAULT_PORT), ("0", DEFAULT_PORT), ("70000", DEFAULT_PORT)],
)
def test_resolve_port(raw, expected):
    assert resolve_port(raw) == expected


def test_resolve_port_custom_default():
    assert resolve_port("nope", default=9000) == 9000
