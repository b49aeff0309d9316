"""Integration tests for the relay HTTP API against a mocked Feishu platform."""

import json

import httpx
import pytest


def sent_payloads(route):
    return [json.loads(call.request.content) for call in route.calls]


@pytest.mark.integration
class TestSendMessageAPI:
    """Test POST /sendMessage end to end."""

    @pytest.mark.asyncio
    async def test_liveness_text(self, client):
        response = await client.get("/")

        assert response.status_code == 200
        assert response.text == "Bot is alive!"

    @pytest.mark.asyncio
    async def test_json_submission_queued_and_delivered(self, app, client, feishu_api):
        response = await client.post(
            "/sendMessage",
            json={"alias": "alice", "message": "hi", "reply_to": "bob", "link": "http://x"},
        )

        assert response.status_code == 200
        assert response.json() == {"status": "queued", "message": "Message queued for delivery"}

        await app.state.relay.queue.join()
        assert sent_payloads(feishu_api["send"]) == [{
            "open_chat_id": "oc_test_chat",
            "msg_type": "text",
            "content": {"text": "alice → @bob: hi\nLink: http://x"},
        }]
        assert feishu_api["send"].calls.last.request.headers["Authorization"] == "Bearer tenant-token-secret"

    @pytest.mark.asyncio
    async def test_form_submission_accepted(self, app, client, feishu_api):
        response = await client.post("/sendMessage", data={"message": "from a form"})

        assert response.status_code == 200
        await app.state.relay.queue.join()
        assert sent_payloads(feishu_api["send"])[0]["content"] == {"text": "Anonymous: from a form"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [{}, {"alias": "alice"}, {"message": "   "}])
    async def test_missing_message_rejected(self, client, feishu_api, payload):
        response = await client.post("/sendMessage", json=payload)

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Message is required"
        assert body["code"] == "VALIDATION_ERROR"
        assert not feishu_api["send"].called

    @pytest.mark.asyncio
    async def test_malformed_json_rejected(self, client):
        response = await client.post(
            "/sendMessage",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Malformed JSON body"

    @pytest.mark.asyncio
    async def test_image_submission_sent_synchronously(self, client, feishu_api, upload_dir):
        response = await client.post(
            "/sendMessage",
            data={"alias": "alice", "message": "look"},
            files={"image": ("cat.png", b"\x89PNG fake image", "image/png")},
        )

        assert response.status_code == 200
        assert response.json() == {
            "status": "sent",
            "message": "Message sent successfully",
            "image_key": "img_v2_test",
        }
        payloads = sent_payloads(feishu_api["send"])
        assert [p["msg_type"] for p in payloads] == ["text", "image"]
        assert payloads[1]["content"] == {"image_key": "img_v2_test"}
        assert feishu_api["image"].call_count == 1
        assert list(upload_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_image_leg_failure_reports_partial_delivery(self, client, feishu_api, upload_dir):
        feishu_api["image"].mock(return_value=httpx.Response(500, json={"code": 1, "msg": "fail"}))

        response = await client.post(
            "/sendMessage",
            data={"message": "look"},
            files={"image": ("cat.png", b"\x89PNG fake image", "image/png")},
        )

        assert response.status_code == 502
        body = response.json()
        assert body["partial"] is True
        assert body["code"] == "PARTIAL_DELIVERY"
        assert feishu_api["send"].call_count == 1
        assert list(upload_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_expired_token_refreshed_once(self, client, feishu_api):
        # The first token was fetched when the application started
        feishu_api["token"].side_effect = [
            httpx.Response(200, json={"code": 0, "tenant_access_token": "tenant-token-rotated", "expire": 7200}),
        ]
        feishu_api["send"].side_effect = [
            httpx.Response(200, json={"code": 99991663, "msg": "Invalid access token"}),
            httpx.Response(200, json={"code": 0}),
            httpx.Response(200, json={"code": 0}),
        ]

        response = await client.post(
            "/sendMessage",
            data={"message": "look"},
            files={"image": ("cat.png", b"\x89PNG fake image", "image/png")},
        )

        assert response.status_code == 200
        auth_headers = [
            call.request.headers["Authorization"] for call in feishu_api["send"].calls
        ]
        assert auth_headers == ["Bearer tenant-token-secret", "Bearer tenant-token-rotated", "Bearer tenant-token-rotated"]

    @pytest.mark.asyncio
    async def test_unsupported_image_type_rejected(self, client, feishu_api):
        response = await client.post(
            "/sendMessage",
            data={"message": "look"},
            files={"image": ("notes.txt", b"plain text", "text/plain")},
        )

        assert response.status_code == 400
        assert response.json()["field"] == "image"
        assert not feishu_api["send"].called

    @pytest.mark.asyncio
    async def test_correlation_id_echoed(self, client):
        response = await client.post(
            "/sendMessage",
            json={"alias": "alice"},
            headers={"X-Correlation-Id": "req-123"},
        )

        assert response.headers["X-Correlation-Id"] == "req-123"
        assert response.json()["correlation_id"] == "req-123"


@pytest.mark.integration
class TestLimits:
    """Test admission control and size limits with tight settings."""

    @pytest.fixture
    def settings_overrides(self):
        return {
            "RATE_LIMIT_MAX_REQUESTS": 2,
            "MAX_UPLOAD_BYTES": 1024,
            "MAX_REQUEST_BODY_BYTES": 1024,
        }

    @pytest.mark.asyncio
    async def test_rate_limit_returns_429_with_retry_after(self, client):
        for _ in range(2):
            response = await client.post("/sendMessage", json={"message": "hi"})
            assert response.status_code == 200

        response = await client.post("/sendMessage", json={"message": "hi"})

        assert response.status_code == 429
        assert response.json()["code"] == "RATE_LIMITED"
        assert 1 <= int(response.headers["Retry-After"]) <= 60

    @pytest.mark.asyncio
    async def test_forwarded_clients_limited_separately(self, client):
        for _ in range(2):
            await client.post("/sendMessage", json={"message": "hi"}, headers={"X-Forwarded-For": "1.1.1.1"})

        response = await client.post(
            "/sendMessage", json={"message": "hi"}, headers={"X-Forwarded-For": "2.2.2.2"}
        )

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_oversized_image_returns_413(self, client, feishu_api, upload_dir):
        response = await client.post(
            "/sendMessage",
            data={"message": "big"},
            files={"image": ("big.png", b"x" * 1100, "image/png")},
        )

        assert response.status_code == 413
        assert not feishu_api["image"].called
        assert not upload_dir.exists() or list(upload_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_oversized_json_body_returns_413(self, client):
        response = await client.post("/sendMessage", json={"message": "x" * 2048})

        assert response.status_code == 413

    @pytest.mark.asyncio
    async def test_oversized_multipart_rejected_before_parsing(self, client, feishu_api, upload_dir):
        response = await client.post(
            "/sendMessage",
            data={"message": "huge"},
            files={"image": ("huge.png", b"x" * 4096, "image/png")},
        )

        assert response.status_code == 413
        assert response.json()["error"] == "Request body too large"
        assert not feishu_api["image"].called
        assert not upload_dir.exists()

    @pytest.mark.asyncio
    async def test_rejected_image_does_not_consume_rate_limit(self, client):
        for _ in range(2):
            response = await client.post(
                "/sendMessage",
                data={"message": "big"},
                files={"image": ("big.png", b"x" * 1100, "image/png")},
            )
            assert response.status_code == 413

        response = await client.post("/sendMessage", json={"message": "hi"})

        assert response.status_code == 200


@pytest.mark.integration
class TestHealthAndMetrics:
    """Test probes and monitoring endpoints."""

    @pytest.mark.asyncio
    async def test_probes(self, client):
        assert (await client.get("/healthz")).json()["status"] == "ok"

        readiness = await client.get("/readyz")
        assert readiness.status_code == 200
        assert readiness.json()["status"] == "ready"

    @pytest.mark.asyncio
    async def test_detailed_health(self, client):
        response = await client.get("/api/health")

        assert response.status_code == 200
        body = response.json()
        assert body["overall_healthy"] is True
        assert body["credential"]["valid"] is True
        assert body["dispatch_queue"]["running"] is True
        assert body["admission"]["max_requests"] == 30
        assert body["janitor"]["directory"] == "uploads"
        assert "tenant-token-secret" not in json.dumps(body["credential"])
        assert "tenant-token-secret" not in response.text

    @pytest.mark.asyncio
    async def test_metrics_exposed(self, client):
        await client.post("/sendMessage", json={"message": "hi"})

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "relay_submissions_total" in response.text
        assert "relay_token_refresh_total" in response.text
