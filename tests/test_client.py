import httpx
import pytest

from conftest import BOOTSTRAP_PATH, body_of, run
from dramabox.errors import MalformedResponse, UpstreamRejected, UpstreamStatusError
from dramabox.transport import encode_body

THEATER = "/drama-box/he001/theater"


def test_signed_request_carries_token_and_signature(make_context, upstream):
    upstream.route(THEATER, [{"success": True, "data": {"ok": 1}}])
    context = make_context()
    payload = {"channelId": 205, "name": "ação"}

    data = run(context.client.request("pt", THEATER, payload))

    assert data["data"] == {"ok": 1}
    request = upstream.requests_to(THEATER)[0]
    token = context.tokens.peek("pt")
    body = encode_body(payload)
    timestamp = int(request.url.params["timestamp"])

    assert request.headers["tn"] == f"Bearer {token.value}"
    assert request.headers["language"] == "pt"
    assert request.content == body.encode("utf-8")
    assert request.headers["sn"] == context.signer.sign(
        context.signer.material(timestamp, body, token.identity, f"Bearer {token.value}")
    )


def test_soft_failure_reauths_once_then_succeeds(make_context, upstream, sleep):
    upstream.route(THEATER, [{"success": False, "message": "token expired"}, {"success": True, "data": {}}])

    data = run(make_context().client.request("pt", THEATER, {}))

    assert data["success"] is True
    assert upstream.calls[THEATER] == 2
    assert upstream.calls[BOOTSTRAP_PATH] == 2
    assert sleep.backoffs == []
    second = upstream.requests_to(THEATER)[1]
    assert second.headers["tn"] == "Bearer tok-2"


def test_second_soft_failure_is_terminal(make_context, upstream):
    upstream.route(THEATER, [{"success": False, "message": "account banned"}])

    with pytest.raises(UpstreamRejected) as excinfo:
        run(make_context().client.request("pt", THEATER, {}))

    assert str(excinfo.value) == f"[{THEATER}] account banned"
    assert upstream.calls[THEATER] == 2


def test_bad_gateway_invalidates_token_before_retry(make_context, upstream, sleep):
    upstream.route(THEATER, [httpx.Response(502), {"success": True}])

    run(make_context().client.request("pt", THEATER, {}))

    assert upstream.calls[BOOTSTRAP_PATH] == 2
    assert sleep.calls == [1.0]


def test_server_error_keeps_token(make_context, upstream, sleep):
    upstream.route(THEATER, [httpx.Response(500), {"success": True}])

    run(make_context().client.request("pt", THEATER, {}))

    assert upstream.calls[BOOTSTRAP_PATH] == 1
    assert sleep.calls == [1.0]


def test_persistent_outage_stops_after_four_attempts(make_context, upstream, sleep):
    upstream.route(THEATER, [httpx.Response(503)])

    with pytest.raises(UpstreamStatusError) as excinfo:
        run(make_context().client.request("pt", THEATER, {}))

    assert excinfo.value.status_code == 503
    assert "Service unavailable" in str(excinfo.value)
    assert upstream.calls[THEATER] == 4
    assert sleep.calls == [1.0, 2.0, 4.0]


def test_not_found_is_not_retried(make_context, upstream, sleep):
    upstream.route(THEATER, [httpx.Response(404)])

    with pytest.raises(UpstreamStatusError) as excinfo:
        run(make_context().client.request("pt", THEATER, {}))

    assert str(excinfo.value) == f"[{THEATER}] Not found - no data located"
    assert upstream.calls[THEATER] == 1
    assert sleep.calls == []


def test_network_errors_are_classified(make_context, upstream):
    upstream.route(THEATER, [httpx.ConnectError("[Errno -2] Name or service not known")])

    with pytest.raises(Exception) as excinfo:
        run(make_context().client.request("pt", THEATER, {}))

    assert "DNS error" in str(excinfo.value)
    assert upstream.calls[THEATER] == 4


def test_alternate_auth_skips_token_and_signature(make_context, upstream, settings):
    upstream.route("/webfic/home/browse", [{"data": {"types": []}}])

    run(make_context().client.request("en", "/webfic/home/browse", {"typeTwoId": 0}, use_alternate_auth=True))

    request = upstream.requests_to("/webfic/home/browse")[0]
    assert str(request.url).startswith(settings.webfic_url)
    assert request.headers["pline"] == "DRAMABOX"
    assert request.headers["language"] == "en"
    assert "tn" not in request.headers
    assert "sn" not in request.headers
    assert body_of(request) == {"typeTwoId": 0}
    assert upstream.calls[BOOTSTRAP_PATH] == 0


def test_get_requests_have_no_body(make_context, upstream):
    path = "/webfic/book/detail/v2"
    upstream.route(path, [{"data": {}}])

    run(make_context().client.request("pt", f"{path}?id=1&language=pt", {"id": 1}, use_alternate_auth=True, method="get"))

    request = upstream.requests_to(path)[0]
    assert request.method == "GET"
    assert request.content == b""
    assert request.url.params["id"] == "1"


def test_debug_headers_expose_token_identity(make_context):
    info = run(make_context().client.debug_headers("pt"))

    assert info["headers"]["device-id"] == info["tokenInfo"]["deviceId"]
    assert info["headers"]["tn"] == "Bearer tok-1"
    assert info["tokenInfo"]["validUntil"].endswith("+00:00")


def test_non_json_body_is_retried_as_malformed(make_context, upstream, sleep):
    upstream.route(THEATER, [httpx.Response(200, text="<html>maintenance</html>"), {"success": True}])

    data = run(make_context().client.request("pt", THEATER, {}))

    assert data == {"success": True}
    assert sleep.calls == [1.0]


def test_persistent_non_json_body_is_described_as_malformed(make_context, upstream):
    upstream.route(THEATER, [httpx.Response(200, text="<html>maintenance</html>")])

    with pytest.raises(MalformedResponse) as excinfo:
        run(make_context().client.request("pt", THEATER, {}))

    assert str(excinfo.value) == f"[{THEATER}] Malformed response - upstream did not return JSON"
    assert upstream.calls[THEATER] == 4
