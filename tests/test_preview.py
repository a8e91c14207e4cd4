"""
tests/test_preview.py
"""
from __future__ import annotations

import re

import pytest

from apexblog.blog import app, internal_error

ID_RE = re.compile(r'<div id="(a[0-9a-z]{8})"></div>')
CHART_BODY = 'Hi\n\n{% apexcharts %}\n{"series": [{"data": [4, 2]}]}\n{% endapexcharts %}\n'


def _lib_tag() -> str:
    return f'<script src="{app.config["APEXCHARTS_SRC"]}"></script>'


@pytest.mark.parametrize("path", ["/", "/robots.txt"])
def test_public_routes_ok(client, path):
    rv = client.get(path)
    assert rv.status_code == 200


def test_index_form_does_not_load_library(client):
    html = client.get("/").data.decode()
    assert "<textarea" in html
    assert _lib_tag() not in html


def test_preview_renders_chart_and_loads_library(client):
    rv = client.post("/", data={"body": CHART_BODY})
    html = rv.data.decode()
    assert rv.status_code == 200
    assert ID_RE.search(html)
    assert '{"series": [{"data": [4, 2]}]}' in html
    assert _lib_tag() in html


def test_preview_flag_loads_library_without_charts(client):
    html = client.post("/", data={"body": "no charts", "apexcharts": "1"}).data.decode()
    assert _lib_tag() in html
    assert "new ApexCharts" not in html


def test_preview_without_charts_or_flag(client):
    html = client.post("/", data={"body": "*plain*"}).data.decode()
    assert "<em>plain</em>" in html
    assert _lib_tag() not in html


def test_preview_requires_text(client):
    html = client.post("/", data={"body": "   "}).data.decode()
    assert "Text is required." in html


def test_render_endpoint_form(client):
    rv = client.post("/render", data={"content": '{"a":1}'})
    assert rv.status_code == 200
    assert rv.mimetype == "text/html"
    html = rv.data.decode()
    assert ID_RE.match(html)
    assert 'new ApexCharts(chartDiv, {"a":1});' in html


def test_render_endpoint_raw_body(client):
    rv = client.post("/render", data='{"b":2}', content_type="application/json")
    assert rv.status_code == 200
    assert 'new ApexCharts(chartDiv, {"b":2});' in rv.data.decode()


def test_render_endpoint_empty_body(client):
    rv = client.post("/render", data="", content_type="text/plain")
    html = rv.data.decode()
    assert rv.status_code == 200
    assert ID_RE.search(html)
    assert "new ApexCharts(chartDiv, );" in html


def test_render_endpoint_fresh_ids(client):
    a = client.post("/render", data={"content": "{}"}).data.decode()
    b = client.post("/render", data={"content": "{}"}).data.decode()
    assert ID_RE.search(a).group(1) != ID_RE.search(b).group(1)


def test_render_endpoint_needs_content(client):
    rv = client.post("/render", data={"other": "x"})
    assert rv.status_code == 400


def test_render_endpoint_get_not_allowed(client):
    assert client.get("/render").status_code == 405


def test_not_found(client):
    rv = client.get("/does/not/exist")
    assert rv.status_code == 404
    assert b"Page not found" in rv.data


def test_internal_error_page():
    with app.test_request_context("/"):
        body, status = internal_error(None)
    assert status == 500
    assert "Internal Server Error" in body


def test_security_headers(client):
    rv = client.get("/")
    assert rv.headers["X-Frame-Options"] == "DENY"
    assert rv.headers["X-Content-Type-Options"] == "nosniff"


def test_robots_disallows_all(client):
    rv = client.get("/robots.txt")
    assert rv.mimetype == "text/plain"
    assert b"Disallow: /" in rv.data


def test_render_endpoint_is_throttled(client, monkeypatch):
    monkeypatch.setitem(app.config, "APEXCHARTS_RENDER_LIMIT", 3)
    monkeypatch.setitem(app.config, "APEXCHARTS_RENDER_WINDOW", 60)
    headers = {"X-Forwarded-For": "203.0.113.77"}

    for _ in range(3):
        rv = client.post("/render", data={"content": "{}"}, headers=headers)
        assert rv.status_code == 200

    rv = client.post("/render", data={"content": "{}"}, headers=headers)
    assert rv.status_code == 429
    assert 1 <= int(rv.headers["Retry-After"]) <= 60

    # other clients keep their own budget
    other = client.post(
        "/render", data={"content": "{}"}, headers={"X-Forwarded-For": "203.0.113.78"}
    )
    assert other.status_code == 200
