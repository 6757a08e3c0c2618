import io

import pytest
from fastapi.testclient import TestClient
from PIL import Image

import ai_client
import app as app_module
from storage import LocalStore

QUOTE_REPLY = {
    "line_items": [
        {"item": "Install LVP flooring", "quantity": 250, "unit": "sqft", "rate": 3.5, "total": 875},
        {"item": "Paint walls and ceiling", "quantity": 400, "unit": "sqft", "rate": 1.25, "total": 500},
    ],
    "summary": {
        "subtotal": 1375,
        "overhead": 0,
        "contingency": 0,
        "tax": 0,
        "grand_total": 1375,
        "disclaimer": "This is a labor-only quote and does not include major materials.",
    },
}

RENDER_URI = "data:image/png;base64,iVBORw0KGgo="

def png_bytes(size=(16, 12)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, (200, 180, 160)).save(buf, format="PNG")
    return buf.getvalue()

@pytest.fixture
def calls():
    return {"quote": [], "render": []}

@pytest.fixture
def client(tmp_path, monkeypatch, calls):
    monkeypatch.setattr(app_module, "store", LocalStore(str(tmp_path)))
    monkeypatch.setattr(app_module, "APP_PASSWORD", "")
    app_module._sessions.clear()
    app_module._auth_tokens.clear()

    def fake_quote(*args):
        calls["quote"].append(args)
        return QUOTE_REPLY

    def fake_render(*args):
        calls["render"].append(args)
        return RENDER_URI

    monkeypatch.setattr(ai_client, "request_quote", fake_quote)
    monkeypatch.setattr(ai_client, "request_render", fake_render)
    with TestClient(app_module.app) as c:
        yield c

@pytest.fixture
def sid(client):
    return client.post("/api/sessions").json()["session_id"]

@pytest.fixture
def quoted(client, sid):
    resp = client.post(
        f"/api/sessions/{sid}/generate",
        data={"project_name": "Main Floor Bath", "scope": "LVP and paint", "region": "QC_MONTREAL"},
        files={"file": ("room.png", png_bytes(), "image/png")},
    )
    assert resp.status_code == 200, resp.text
    return sid
