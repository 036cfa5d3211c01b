"""
Tests for the HTTP status source and the email dispatch.
"""

from unittest.mock import MagicMock, patch

import httpx
import pytest

from pnr_tracker.core.batch_processor import is_retryable_error
from pnr_tracker.core.notification_dispatch import (
    DeliveryError,
    EmailNotificationDispatch,
    build_message,
)
from pnr_tracker.core.status_source import HTTPStatusSource, StatusSourceError


def make_source(handler):
    return HTTPStatusSource(base_url="http://upstream.test/pnr", transport=httpx.MockTransport(handler))


class TestHTTPStatusSource:
    @pytest.mark.asyncio
    async def test_parses_status(self):
        def handler(request):
            assert request.url.path == "/pnr/1234567890"
            return httpx.Response(200, json={
                "from": "NDLS", "to": "BCT", "date": "15-01-2024", "status": "WL/5", "isFlushed": False,
            })

        snapshot = await make_source(handler).fetch("1234567890")

        assert snapshot.status == "WL/5"
        assert snapshot.origin == "NDLS"
        assert snapshot.destination == "BCT"
        assert snapshot.travel_date == "15-01-2024"
        assert snapshot.retired is False
        assert snapshot.error is None

    @pytest.mark.asyncio
    async def test_flushed_record(self):
        snapshot = await make_source(lambda request: httpx.Response(200, json={"isFlushed": True})).fetch("1234567890")

        assert snapshot.retired is True
        assert snapshot.error is None

    @pytest.mark.asyncio
    async def test_missing_status_is_terminal(self):
        snapshot = await make_source(lambda request: httpx.Response(200, json={"from": "NDLS"})).fetch("1234567890")

        assert snapshot.error.startswith("Error parsing response")
        assert not is_retryable_error(snapshot.error)

    @pytest.mark.asyncio
    async def test_malformed_body_is_terminal(self):
        snapshot = await make_source(lambda request: httpx.Response(200, text="<html>")).fetch("1234567890")

        assert snapshot.error.startswith("Error parsing response")

    @pytest.mark.asyncio
    async def test_not_found_is_terminal(self):
        snapshot = await make_source(lambda request: httpx.Response(404)).fetch("1234567890")

        assert snapshot.error == "Reference code not found"
        assert not is_retryable_error(snapshot.error)

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self):
        with pytest.raises(StatusSourceError) as exc_info:
            await make_source(lambda request: httpx.Response(503)).fetch("1234567890")

        assert is_retryable_error(str(exc_info.value))

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(StatusSourceError) as exc_info:
            await make_source(handler).fetch("1234567890")

        assert str(exc_info.value) == "Request timeout"

    @pytest.mark.asyncio
    async def test_connection_error_is_retryable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(StatusSourceError) as exc_info:
            await make_source(handler).fetch("1234567890")

        assert is_retryable_error(str(exc_info.value))


class TestEmailDispatch:
    def test_status_change_message(self):
        subject, body = build_message("status_change", {
            "reference_code": "2222222222", "old_status": "WL/5", "new_status": "WL/2",
        })

        assert "2222222222" in subject
        assert "WL/5" in body
        assert "WL/2" in body

    def test_system_message_uses_title(self):
        subject, body = build_message("system", {"title": "Scheduler Error", "message": "boom"})

        assert subject == "Scheduler Error"
        assert "boom" in body

    def test_recipient_resolution(self):
        dispatch = EmailNotificationDispatch(email_resolver={"u-1": "user1@example.com"}.get)

        assert dispatch.resolve_recipients("status_change", "alice@example.com") == ["alice@example.com"]
        assert dispatch.resolve_recipients("status_change", "u-1") == ["user1@example.com"]
        assert dispatch.resolve_recipients("status_change", "u-2") == []
        assert dispatch.resolve_recipients("system", "system") == ["ops@example.com"]

    @pytest.mark.asyncio
    async def test_deliver_sends_mail(self):
        with patch("pnr_tracker.core.notification_dispatch.smtplib.SMTP") as smtp_cls:
            server = MagicMock()
            smtp_cls.return_value = server

            await EmailNotificationDispatch().deliver(
                "status_change", "alice@example.com", {"reference_code": "2222222222"}
            )

        server.sendmail.assert_called_once()
        assert server.sendmail.call_args.args[1] == ["alice@example.com"]
        server.quit.assert_called_once()

    @pytest.mark.asyncio
    async def test_unknown_owner_raises(self):
        with pytest.raises(DeliveryError):
            await EmailNotificationDispatch().deliver("status_change", "u-404", {})

    @pytest.mark.asyncio
    async def test_smtp_failure_raises_delivery_error(self):
        with patch("pnr_tracker.core.notification_dispatch.smtplib.SMTP", side_effect=OSError("refused")):
            with pytest.raises(DeliveryError):
                await EmailNotificationDispatch().deliver("test", "alice@example.com", {"message": "hi"})
