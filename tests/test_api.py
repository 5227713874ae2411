"""HTTP endpoints, with the OCR engine replaced by a scripted recognizer."""
import imageio.v3 as iio
import numpy as np
import pytest
from fastapi.testclient import TestClient

import main

from conftest import FakeRecognizer, draw_card, rect_corners


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv("PRELOAD_OCR", "0")
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    with TestClient(main.app) as c:
        monkeypatch.setattr(main, "engines", FakeRecognizer(name_text="Vikavolt", number_text="019 / 191"))
        yield c


def png_bytes(frame):
    return iio.imwrite("<bytes>", frame, extension=".png")


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["models_ready"] is True
    assert body["catalog_size"] == 252
    assert body["cloud_enabled"] is False


def test_scan_identifies_card(client):
    frame = draw_card(rect_corners(220, 100, 420, 380))

    resp = client.post("/scan", files={"image": ("card.png", png_bytes(frame), "image/png")})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["source"] == "local"
    assert body["card"]["name"] == "Vikavolt"
    assert body["card"]["number"] == "019/191"
    assert body["ocr_number"] == "019/191"
    assert set(body["quad"]) == {"tl", "tr", "bl", "br"}
    assert isinstance(body["processing_time_ms"], int)


def test_scan_without_card(client):
    frame = np.full((480, 640, 3), 40, dtype=np.uint8)

    body = client.post("/scan", files={"image": ("empty.png", png_bytes(frame), "image/png")}).json()

    assert body["success"] is False
    assert body["card"] is None
    assert body["quad"] is None
    assert body["ocr_name"] is None


def test_scan_animated_image_uses_first_frame(client):
    card = draw_card(rect_corners(220, 100, 420, 380))
    blank = np.full_like(card, 20)
    gif = iio.imwrite("<bytes>", np.stack([card, blank]), extension=".gif")

    resp = client.post("/scan", files={"image": ("card.gif", gif, "image/gif")})

    assert resp.status_code == 200
    assert resp.json()["quad"] is not None


def test_scan_invalid_image(client):
    resp = client.post("/scan", files={"image": ("junk.png", b"definitely not an image", "image/png")})
    assert resp.status_code == 400


def test_scan_too_large(client, monkeypatch):
    monkeypatch.setattr(main, "MAX_UPLOAD_BYTES", 10)
    resp = client.post("/scan", files={"image": ("big.png", b"x" * 11, "image/png")})
    assert resp.status_code == 413


def test_scan_before_ready(client, monkeypatch):
    monkeypatch.setattr(main, "models_ready", False)
    resp = client.post("/scan", files={"image": ("card.png", b"", "image/png")})
    assert resp.status_code == 503


def test_lookup_local(client):
    resp = client.get("/lookup", params={"q": "Vikavolt"})
    assert resp.status_code == 200
    assert resp.json()["card"]["number"] == "019/191"


def test_lookup_by_number(client):
    resp = client.get("/lookup", params={"q": "036/191"})
    assert resp.json()["card"]["name"] == "Pikachu ex"


def test_lookup_not_found(client):
    assert client.get("/lookup", params={"q": "Charizard"}).status_code == 404


def test_lookup_empty_query(client):
    assert client.get("/lookup", params={"q": "   "}).status_code == 400
