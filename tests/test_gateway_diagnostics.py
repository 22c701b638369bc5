from agenda_bot.services.gateway_diagnostics import (
    HINT_NETWORK,
    HINT_NUMBER_NOT_FOUND,
    HINT_QUOTE_COMMAND,
    HINT_ROUTE_NOT_FOUND,
    HINT_TUNNEL,
    extract_instance_state,
    extract_pairing_code,
    extract_qr_base64,
    gateway_hint,
    is_instance_not_found,
)


class TestExtractors:
    def test_state_locations(self):
        assert extract_instance_state({"state": "open"}) == "open"
        assert extract_instance_state({"instance": {"state": "close"}}) == "close"
        assert extract_instance_state({"data": {"state": "connecting"}}) == "connecting"
        assert extract_instance_state("open") is None

    def test_qr_strips_data_url(self):
        assert extract_qr_base64({"qrcode": {"base64": "data:image/png;base64,QUJD"}}) == "QUJD"

    def test_qr_nested_under_data(self):
        assert extract_qr_base64({"data": {"instance": {"qr": "RkFL"}}}) == "RkFL"

    def test_no_qr(self):
        assert extract_qr_base64({"instance": {"state": "open"}}) is None

    def test_pairing_code(self):
        assert extract_pairing_code({"pairingCode": "WZYE-H1YY"}) == "WZYE-H1YY"
        assert extract_pairing_code({"qrcode": {"pairingCode": "AAAA-BBBB"}}) == "AAAA-BBBB"
        assert extract_pairing_code({"data": {"pairing_code": " X1 "}}) == "X1"
        assert extract_pairing_code({}) is None


class TestInstanceNotFound:
    def test_matches_named_instance(self):
        details = {"response": {"message": ['The "studio-bella" instance does not exist']}}
        assert is_instance_not_found(details, "studio-bella") is True
        assert is_instance_not_found(details, "other") is False

    def test_wrapped_body(self):
        details = {"error": "not_found", "last": {"message": "Instance not found"}}
        assert is_instance_not_found(details) is True

    def test_route_404_is_not_instance_404(self):
        assert is_instance_not_found("<html>Cannot GET /instance/connectionState/x</html>", "x") is False


class TestGatewayHint:
    def test_route_not_found(self):
        assert gateway_hint({"error": "not_found", "last": "Cannot GET /instance/connect/x"}) == HINT_ROUTE_NOT_FOUND

    def test_tunnel(self):
        assert gateway_hint({"message": "Error code: 1033 Cloudflare Tunnel error"}) == HINT_TUNNEL

    def test_network(self):
        assert gateway_hint({"error": "gateway_fetch_failed", "message": "connection refused"}) == HINT_NETWORK

    def test_number_not_found(self):
        assert gateway_hint({"response": {"message": [{"exists": False, "number": "55"}]}}) == HINT_NUMBER_NOT_FOUND

    def test_quote_command(self):
        assert gateway_hint({"message": "Quote command returned error"}) == HINT_QUOTE_COMMAND

    def test_unknown(self):
        assert gateway_hint({"message": "Bad request"}) is None
        assert gateway_hint(None) is None
