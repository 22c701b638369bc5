import json

import httpx
import pytest

from agenda_bot.services.gateway_client import (
    CLASS_ERROR,
    CLASS_NOT_FOUND,
    CLASS_UNAUTHORIZED,
    CLASS_UNREACHABLE,
    GatewayClient,
    GatewayConfigError,
)
from agenda_bot.services.gateway_diagnostics import HINT_NETWORK, HINT_UNAUTHORIZED

INSTANCE = "studio-bella"
PHONE = "5511999990000"
INSTANCE_MISSING = {
    "status": 404,
    "error": "Not Found",
    "response": {"message": [f'The "{INSTANCE}" instance does not exist']},
}


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _client(handler, clock=None, **kwargs) -> GatewayClient:
    return GatewayClient(
        "https://gw.example.com",
        "k",
        transport=httpx.MockTransport(handler),
        clock=clock or FakeClock(),
        **kwargs,
    )


def _body(request: httpx.Request) -> dict:
    return json.loads(request.content) if request.content else {}


class TestFromConfig:
    def test_missing_config(self):
        with pytest.raises(GatewayConfigError) as exc:
            GatewayClient.from_config("", "k")
        assert exc.value.code == "gateway_not_configured"

    def test_private_url(self):
        with pytest.raises(GatewayConfigError) as exc:
            GatewayClient.from_config("http://192.168.0.5:8080", "k")
        assert exc.value.code == "invalid_gateway_url"
        assert exc.value.reason == "local_address"

    def test_cleans_url(self):
        client = GatewayClient.from_config(" gw.example.com/ ", "k")
        assert client.base_url == "https://gw.example.com"
        client.close()


class TestSendText:
    def test_first_attempt_succeeds(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201, json={"key": {"id": "ABC"}})

        with _client(handler) as client:
            result = client.send_text(INSTANCE, PHONE, "Olá")

        assert result.ok is True
        assert result.base_url == "https://gw.example.com"
        assert result.auth_kind == "apikey"
        assert len(result.attempts) == 1
        assert seen[0].url.path == f"/message/sendText/{INSTANCE}"
        assert seen[0].headers["apikey"] == "k"
        assert _body(seen[0]) == {"number": PHONE, "text": "Olá"}

    def test_rotates_auth_on_401_and_reuses_the_winner(self):
        def handler(request):
            if request.headers.get("Authorization") != "Bearer k":
                return httpx.Response(401, json={"message": "Unauthorized"})
            if _body(request)["number"] == PHONE:
                return httpx.Response(400, json={"response": {"message": [{"exists": False, "number": PHONE}]}})
            return httpx.Response(201, json={"key": {"id": "ABC"}})

        with _client(handler) as client:
            result = client.send_text(INSTANCE, PHONE, "Olá")

        assert result.ok is True
        assert [a["status"] for a in result.attempts] == [401, 401, 401, 401, 400, 201]
        assert result.attempts[4]["auth_kind"] == "authorization_bearer"
        assert result.attempts[-1]["auth_kind"] == "authorization_bearer"
        assert result.attempts[-1]["recipient"] == "*********0000"

    def test_all_unauthorized_stays_within_base_url_cap(self):
        def handler(request):
            return httpx.Response(401, json={"message": "Unauthorized"})

        with _client(handler) as client:
            result = client.send_text(INSTANCE, PHONE, "Olá")

        assert result.ok is False
        assert result.status == 401
        assert result.classification == CLASS_UNAUTHORIZED
        assert result.body["error"] == "unauthorized"
        assert result.hint == HINT_UNAUTHORIZED
        assert len({a["base_url"] for a in result.attempts}) == 4
        assert len(result.attempts) == 4 * 11

    def test_route_404_moves_to_next_base_url(self):
        def handler(request):
            if request.url.path.startswith("/api/"):
                return httpx.Response(201, json={"key": {"id": "ABC"}})
            return httpx.Response(404, text="<html>Cannot POST /message/sendText</html>")

        with _client(handler) as client:
            result = client.send_text(INSTANCE, PHONE, "Olá")

        assert result.ok is True
        assert result.base_url == "https://gw.example.com/api"
        assert len(result.attempts) == 2

    def test_unreachable_short_circuits(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with _client(handler) as client:
            result = client.send_text(INSTANCE, PHONE, "Olá")

        assert result.ok is False
        assert result.status == 502
        assert result.classification == CLASS_UNREACHABLE
        assert result.body["last"]["error"] == "gateway_fetch_failed"
        assert result.hint == HINT_NETWORK
        assert len(result.attempts) == 2

    def test_timeouts_count_as_unreachable(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with _client(handler) as client:
            result = client.send_text(INSTANCE, PHONE, "Olá")

        assert result.status == 504
        assert result.classification == CLASS_UNREACHABLE
        assert result.body["last"]["error"] == "gateway_timeout"

    def test_deadline_stops_attempts(self):
        clock = FakeClock()

        def handler(request):
            clock.now += 20
            return httpx.Response(401, json={"message": "Unauthorized"})

        with _client(handler, clock=clock, deadline_seconds=35) as client:
            result = client.send_text(INSTANCE, PHONE, "Olá")

        assert result.ok is False
        assert len(result.attempts) == 2

    def test_stripped_text_retried_after_quote_error(self):
        def handler(request):
            if "😀" in _body(request)["text"]:
                return httpx.Response(400, json={"message": "Quote command returned error"})
            return httpx.Response(201, json={"key": {"id": "ABC"}})

        with _client(handler) as client:
            result = client.send_text(INSTANCE, PHONE, "Olá 😀")

        assert result.ok is True
        assert [a["text_variant"] for a in result.attempts] == ["raw", "stripped"]

    def test_other_errors_do_not_try_more_recipients(self):
        def handler(request):
            return httpx.Response(500, json={"message": "Internal error"})

        with _client(handler) as client:
            result = client.send_text(INSTANCE, PHONE, "Olá")

        assert result.classification == CLASS_ERROR
        assert len(result.attempts) == 1

    def test_missing_instance_is_created_and_send_retried(self):
        state = {"created": False}

        def handler(request):
            if request.url.path == "/instance/create":
                state["created"] = True
                return httpx.Response(201, json={"instance": {"instanceName": INSTANCE, "status": "created"}})
            if not state["created"]:
                return httpx.Response(404, json=INSTANCE_MISSING)
            return httpx.Response(201, json={"key": {"id": "ABC"}})

        with _client(handler) as client:
            result = client.send_text(INSTANCE, PHONE, "Olá")

        assert result.ok is True
        assert state["created"] is True

    def test_invalid_phone(self):
        with _client(lambda request: httpx.Response(201)) as client:
            result = client.send_text(INSTANCE, "abc", "Olá")
        assert result.status == 400
        assert result.body == {"error": "invalid_payload"}


class TestInstanceOperations:
    def test_instance_not_found_stops_base_url_walk(self):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            return httpx.Response(404, json=INSTANCE_MISSING)

        with _client(handler) as client:
            result = client.connection_state(INSTANCE, provision=False)

        assert calls == [f"/instance/connectionState/{INSTANCE}"]
        assert result.classification == CLASS_NOT_FOUND
        assert result.body["error"] == "not_found"

    def test_create_instance_retries_without_token(self):
        bodies = []

        def handler(request):
            body = _body(request)
            bodies.append(body)
            if "token" in body:
                return httpx.Response(400, json={"message": "token invalid"})
            return httpx.Response(201, json={"instance": {"instanceName": INSTANCE}})

        with _client(handler) as client:
            result = client.create_instance(INSTANCE)

        assert result.ok is True
        assert bodies[0]["token"] == "k"
        assert "token" not in bodies[1]

    def test_connect_when_already_open(self):
        def handler(request):
            return httpx.Response(200, json={"instance": {"instanceName": INSTANCE, "state": "open"}})

        with _client(handler) as client:
            result = client.connect(INSTANCE)

        assert result.ok is True
        assert result.state == "open"
        assert result.qr_base64 is None

    def test_connect_returns_qr(self):
        def handler(request):
            if request.url.path.startswith("/instance/connectionState/"):
                return httpx.Response(200, json={"instance": {"state": "close"}})
            if request.url.path == f"/instance/connect/{INSTANCE}":
                return httpx.Response(200, json={"base64": "data:image/png;base64,AAAA", "code": "2@xyz"})
            return httpx.Response(404, text="Cannot GET")

        with _client(handler) as client:
            result = client.connect(INSTANCE)

        assert result.ok is True
        assert result.qr_base64 == "AAAA"
        assert result.state == "close"
        assert result.hint is None

    def test_connect_with_number_returns_pairing_code(self):
        def handler(request):
            if request.url.path.startswith("/instance/connectionState/"):
                return httpx.Response(200, json={"instance": {"state": "connecting"}})
            if request.url.params.get("number") == PHONE:
                return httpx.Response(200, json={"pairingCode": "ABCD-1234"})
            return httpx.Response(404, text="Cannot GET")

        with _client(handler) as client:
            result = client.connect(INSTANCE, "+55 11 99999-0000")

        assert result.pairing_code == "ABCD-1234"
        assert result.qr_base64 is None
        assert result.hint is None

    def test_disconnect(self):
        methods = []

        def handler(request):
            methods.append((request.method, request.url.path))
            return httpx.Response(200, json={"status": "SUCCESS"})

        with _client(handler) as client:
            result = client.disconnect(INSTANCE)

        assert result.ok is True
        assert methods == [("DELETE", f"/instance/logout/{INSTANCE}"), ("DELETE", f"/instance/delete/{INSTANCE}")]

    def test_disconnect_missing_instance_is_ok(self):
        def handler(request):
            return httpx.Response(404, json=INSTANCE_MISSING)

        with _client(handler) as client:
            result = client.disconnect(INSTANCE)

        assert result.ok is True


class TestOperationBudget:
    def test_connect_shares_one_deadline(self):
        clock = FakeClock()
        calls = []

        def handler(request):
            calls.append(request.url.path)
            clock.now += 5
            if request.url.path.startswith("/instance/connectionState/"):
                return httpx.Response(200, json={"instance": {"state": "close"}})
            return httpx.Response(404, text="Cannot GET")

        with _client(handler, clock=clock, deadline_seconds=35) as client:
            result = client.connect(INSTANCE)

        assert result.ok is False
        assert result.status == 504
        assert result.error.classification == CLASS_UNREACHABLE
        assert len(calls) == 7
        assert clock.now == 35

    def test_connect_stops_once_gateway_is_unreachable(self):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            raise httpx.ConnectError("connection refused", request=request)

        with _client(handler) as client:
            result = client.connect(INSTANCE)

        assert result.ok is False
        assert result.status == 504
        assert result.error.body["error"] == "unreachable"
        assert len(calls) == 2

    def test_provisioned_send_reports_every_attempt(self):
        state = {"created": False}

        def handler(request):
            if request.url.path == "/instance/create":
                state["created"] = True
                return httpx.Response(201, json={"instance": {"instanceName": INSTANCE}})
            if not state["created"]:
                return httpx.Response(404, json=INSTANCE_MISSING)
            return httpx.Response(201, json={"key": {"id": "ABC"}})

        with _client(handler) as client:
            result = client.send_text(INSTANCE, PHONE, "Olá")

        assert result.ok is True
        assert [a["status"] for a in result.attempts] == [404, 201, 201]
