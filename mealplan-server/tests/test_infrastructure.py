from types import SimpleNamespace
from unittest.mock import patch

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from app.auth import is_admin, principal_from_claims, require_admin
from app.config import Settings
from app.db import as_utc, normalize_database_url
from app.main import BodySizeLimitMiddleware, app
from app.observability import REQUEST_ID_HEADER, scrub_event
from app.services.openai_responses import build_request, extract_text
from app.startup import model_problems, validate_settings


def _settings(**overrides):
    values = {
        "environment": "prod",
        "database_url": "postgresql://db/app",
        "redis_url": "redis://cache:6379/0",
        "openai_api_key": "sk-test",
        "clerk_issuer": "https://clerk.example.com",
        "clerk_audience": "mealplan",
        "admin_emails": [],
    }
    values.update(overrides)
    return Settings(**values)


def test_principal_from_claims_prefers_first_email_claim():
    principal = principal_from_claims({"sub": "user_1", "email_address": "a@example.com"})
    assert principal["sub"] == "user_1"
    assert principal["email"] == "a@example.com"

    with pytest.raises(HTTPException) as exc:
        principal_from_claims({"email": "a@example.com"})
    assert exc.value.status_code == 401


def test_admin_checks_configured_emails():
    with patch("app.auth.get_settings", return_value=SimpleNamespace(admin_emails=["Ops@Example.com"], environment="prod")):
        assert is_admin({"email": "ops@example.com"})
        assert not is_admin({"email": "someone@example.com"})
        with pytest.raises(HTTPException) as exc:
            require_admin({"email": None})
        assert exc.value.detail == "Admin only"


def test_admin_without_list_only_in_dev():
    with patch("app.auth.get_settings", return_value=SimpleNamespace(admin_emails=[], environment="dev")):
        assert is_admin({"email": None})
    with patch("app.auth.get_settings", return_value=SimpleNamespace(admin_emails=[], environment="prod")):
        with pytest.raises(HTTPException) as exc:
            require_admin({"email": "a@example.com"})
        assert exc.value.detail == "Admin not configured"


def test_validate_settings_lists_missing_values_outside_dev():
    with pytest.raises(RuntimeError) as exc:
        validate_settings(_settings(redis_url=None, clerk_audience=None))
    assert "CLERK_AUDIENCE" in str(exc.value)
    assert "REDIS_URL" in str(exc.value)

    validate_settings(_settings())
    validate_settings(_settings(environment="dev", database_url=None, openai_api_key=None))
    validate_settings(_settings(clerk_issuer=None, clerk_audience=None, auth_disable_verification=True))


def test_model_problems_flags_disallowed_models():
    assert model_problems(_settings(openai_allowed_models=["gpt-5-mini"], openai_photo_model="gpt-4o-mini")) == [
        "OPENAI_PHOTO_MODEL=gpt-4o-mini"
    ]
    assert model_problems(_settings(openai_allowed_models=[])) == []


def test_csv_lists_are_split():
    settings = _settings(admin_emails="a@example.com, b@example.com", cors_allowed_origins="https://app.example.com")
    assert settings.admin_emails == ["a@example.com", "b@example.com"]
    assert settings.cors_allowed_origins == ["https://app.example.com"]


@pytest.mark.parametrize(
    "raw,expected",
    [
        (None, None),
        ("sqlite+aiosqlite:///./dev.db", "sqlite+aiosqlite:///./dev.db"),
        ("postgres://u:p@db:5432/app", "postgresql+asyncpg://u:p@db:5432/app"),
        ("postgresql://u:p@db:5432/app?sslmode=REQUIRE", "postgresql+asyncpg://u:p@db:5432/app?ssl=require"),
        ("postgresql://u:p@pg.internal:5432/app", "postgresql+asyncpg://u:p@pg.internal:5432/app?ssl=disable"),
        ("postgresql://u:p@db:5432/app?ssl=bogus", "postgresql+asyncpg://u:p@db:5432/app?ssl=disable"),
    ],
)
def test_normalize_database_url(raw, expected):
    assert normalize_database_url(raw) == expected


def test_as_utc_only_touches_naive_values():
    from datetime import datetime, timedelta, timezone

    naive = datetime(2026, 10, 19, 8, 0)
    assert as_utc(naive).tzinfo is timezone.utc
    offset = datetime(2026, 10, 19, 8, 0, tzinfo=timezone(timedelta(hours=2)))
    assert as_utc(offset) is offset
    assert as_utc(None) is None


def test_scrub_event_drops_credentials_and_health_bodies():
    event = {
        "request": {
            "url": "https://api.example.com/v1/me/safety-profile",
            "headers": {"Authorization": "Bearer abc", "User-Agent": "app"},
            "data": {"allergies": ["peanuts"]},
        }
    }
    scrubbed = scrub_event(event)
    assert scrubbed["request"]["headers"] == {"Authorization": "[scrubbed]", "User-Agent": "app"}
    assert "data" not in scrubbed["request"]

    other = scrub_event({"request": {"url": "https://api.example.com/v1/plans", "data": {"a": 1}}})
    assert other["request"]["data"] == {"a": 1}
    assert scrub_event({"message": "boom"}) == {"message": "boom"}


def test_build_request_includes_optional_knobs():
    request = build_request(
        model="gpt-5-mini", system_prompt="s", user_prompt="u", max_output_tokens=100, reasoning_effort="low"
    )
    assert request["input"][0] == {"role": "system", "content": "s"}
    assert request["reasoning"] == {"effort": "low"}
    assert "top_p" not in request
    assert build_request(model="m", system_prompt="s", user_prompt="u", max_output_tokens=1, top_p=0.9)["top_p"] == 0.9


def test_extract_text_reads_objects_and_dicts():
    as_dict = {"output": [{"content": [{"text": '{"name": '}, {"text": '"Soup"}'}]}, {"content": None}]}
    assert extract_text(as_dict) == '{"name": "Soup"}'
    as_object = SimpleNamespace(output=[SimpleNamespace(content=[SimpleNamespace(text=" hi ")])])
    assert extract_text(as_object) == "hi"
    assert extract_text({}) == ""


def test_body_size_limit_rejects_large_declared_bodies():
    small = FastAPI()
    small.add_middleware(BodySizeLimitMiddleware, max_bytes=10)

    @small.post("/echo")
    def echo(payload: dict):
        return payload

    client = TestClient(small)
    assert client.post("/echo", json={"a": 1}).status_code == 200
    resp = client.post("/echo", json={"a": "x" * 50})
    assert resp.status_code == 413


def test_request_id_is_echoed():
    client = TestClient(app)
    resp = client.get("/v1/plans", headers={REQUEST_ID_HEADER: "req-123"})
    assert resp.status_code == 200
    assert resp.headers[REQUEST_ID_HEADER] == "req-123"
    assert client.get("/v1/plans").headers[REQUEST_ID_HEADER]
