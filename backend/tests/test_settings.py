from fastapi.testclient import TestClient

from booking_chat.core.config import Settings
from booking_chat.main import app


def test_list_settings_accept_csv_and_json(monkeypatch):
    monkeypatch.setenv("CORS_ORIGINS", "https://a.example.com, https://b.example.com")
    monkeypatch.setenv("CHAT_ENGAGED_STATUSES", '["ACCEPTED", "Completed"]')
    cfg = Settings()
    assert cfg.CORS_ORIGINS == ["https://a.example.com", "https://b.example.com"]
    assert cfg.CHAT_ENGAGED_STATUSES == ["accepted", "completed"]


def test_allow_all_overrides_origins(monkeypatch):
    monkeypatch.setenv("CORS_ALLOW_ALL", "true")
    assert Settings().CORS_ORIGINS == ["*"]


def test_r2_needs_all_credentials():
    assert not Settings(R2_BUCKET="b", R2_ACCOUNT_ID="a").r2_configured
    assert Settings(
        R2_BUCKET="b", R2_S3_ENDPOINT="https://s3", R2_ACCESS_KEY_ID="k", R2_SECRET_ACCESS_KEY="s"
    ).r2_configured


def test_cors_preflight_exposes_etag():
    client = TestClient(app)
    response = client.options(
        "/api/v1/messages/unread",
        headers={"Origin": "http://localhost:3000", "Access-Control-Request-Method": "GET"},
    )
    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
