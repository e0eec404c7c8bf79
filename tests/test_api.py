import base64
import json

import pytest
from fastapi.testclient import TestClient

import bubblegrade.main as main

from .conftest import encode_png, expected_answers


@pytest.fixture
def client(context, monkeypatch):
    monkeypatch.setattr(main, "default_context", lambda: context)
    return TestClient(main.app)


def _upload(image_bytes, **form):
    files = {"file": ("sheet.png", image_bytes, "image/png")}
    return files, {k: str(v) for k, v in form.items()}


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["mode"] in ("local", "docker")


def test_version(client):
    body = client.get("/version").json()
    assert body["name"] == "OMR Grading Service"
    assert "version" in body


def test_grade(client, sheet_15):
    files, data = _upload(encode_png(sheet_15), totalItems=15, sourceType="upload")
    response = client.post("/grade", files=files, data=data)
    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["result"]["answers"] == expected_answers(15)
    assert "debug" not in body["result"]


def test_grade_flags_bad_manual_corners(client, sheet_15):
    files, data = _upload(encode_png(sheet_15), totalItems=15, corners="[[1, 2], [3]]")
    body = client.post("/grade", files=files, data=data).json()
    assert "invalid_manual_corners" in body["result"]["warnings"]
    assert body["result"]["answers"] == expected_answers(15)


def test_grade_falls_back_on_degenerate_corners(client, sheet_15):
    corners = json.dumps([[0, 0], [10, 10], [20, 20], [30, 30]])
    files, data = _upload(encode_png(sheet_15), totalItems=15, corners=corners)
    response = client.post("/grade", files=files, data=data)
    assert response.status_code == 200
    result = response.json()["result"]
    assert "invalid_manual_corners" in result["warnings"]
    assert result["meta"]["cornerMode"] == "fiducials"
    assert result["answers"] == expected_answers(15)


def test_grade_uses_manual_corners(client, sheet_15):
    corners = json.dumps([[90, 90], [1170, 90], [1170, 1692], [90, 1692]])
    files, data = _upload(encode_png(sheet_15), totalItems=15, corners=corners)
    body = client.post("/grade", files=files, data=data).json()
    assert body["result"]["meta"]["cornerMode"] == "manual"


def test_grade_rejects_garbage(client):
    files, data = _upload(b"garbage bytes", totalItems=15)
    response = client.post("/grade", files=files, data=data)
    assert response.status_code == 400


def test_grade_rejects_empty_file(client):
    files, data = _upload(b"", totalItems=15)
    assert client.post("/grade", files=files, data=data).status_code == 400


def test_grade_rejects_unknown_source(client, sheet_15):
    files, data = _upload(encode_png(sheet_15), totalItems=15, sourceType="fax")
    response = client.post("/grade", files=files, data=data)
    assert response.status_code == 400
    assert response.json()["detail"] == "invalid_source_type"


def test_grade_rejects_zero_items(client, sheet_15):
    files, data = _upload(encode_png(sheet_15), totalItems=0)
    assert client.post("/grade", files=files, data=data).status_code == 400


def test_nudge_from_debug_snapshot(client, sheet_15):
    files, data = _upload(encode_png(sheet_15), totalItems=15, debug="true")
    graded = client.post("/grade", files=files, data=data).json()["result"]
    snapshot = base64.b64decode(graded["debug"]["canonicalImage"])

    files, data = _upload(snapshot, totalItems=15, dx=3, dy=-2)
    response = client.post("/nudge", files=files, data=data)
    assert response.status_code == 200
    result = response.json()["result"]
    assert result["answers"] == expected_answers(15)
    assert result["meta"]["offset"] == {"dx": 3.0, "dy": -2.0}
