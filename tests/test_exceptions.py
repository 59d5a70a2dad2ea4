"""Tests for the RFC 7807 fallback handler."""

from unittest.mock import patch

import pytest
from fastapi import FastAPI
from httpx import AsyncClient, ASGITransport

from app.config import settings
from app.exceptions import ErrorCode, register_exception_handlers


def _failing_app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/explode")
    async def explode():
        raise RuntimeError("database connection lost")

    return app


class TestGenericExceptionHandler:
    @pytest.mark.asyncio
    async def test_unhandled_error_becomes_problem_response(self, monkeypatch):
        monkeypatch.setattr(settings, "DEBUG", False)
        transport = ASGITransport(app=_failing_app(), raise_app_exceptions=False)

        with patch("app.exceptions.capture_exception") as capture:
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                response = await client.get("/explode")

        assert response.status_code == 500
        assert response.headers["content-type"].startswith("application/problem+json")
        body = response.json()
        assert body["code"] == ErrorCode.INTERNAL_ERROR.value
        assert body["instance"] == "/explode"
        assert "database connection lost" not in body["detail"]

        capture.assert_called_once()
        assert isinstance(capture.call_args.args[0], RuntimeError)
        assert capture.call_args.kwargs["context"]["path"] == "/explode"
