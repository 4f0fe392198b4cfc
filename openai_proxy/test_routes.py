"""
End-to-end tests: TestClient -> proxy app -> stub upstream transport.
"""

import httpx
import pytest
from fastapi.testclient import TestClient

from openai_proxy.proxy.forwarder import create_upstream_client
from openai_proxy.proxy.relay import FORWARDING_FAILED_MESSAGE
from openai_proxy.routes import HEALTH_MESSAGE
from openai_proxy.server import create_app
from openai_proxy.utils_tests.upstream_mock import RecordingTransport
from openai_proxy.vars import Settings

SETTINGS = Settings(
    upstream_base=httpx.URL("https://aoai.example.com"),
    host="127.0.0.1",
    port=3000,
    timeout=None,
)


@pytest.fixture
def upstream():
    return RecordingTransport()


@pytest.fixture
def client(upstream, token_provider):
    app = create_app(
        SETTINGS,
        token_provider=token_provider,
        client=create_upstream_client(transport=upstream),
        instrument=False,
    )
    with TestClient(app) as test_client:
        yield test_client


def _header_values(echo: dict, name: str) -> list:
    return [value for key, value in echo["headers"] if key == name]


def test_health_is_not_forwarded(client, upstream, token_provider):
    r = client.get("/")

    assert r.status_code == 200
    assert r.text == HEALTH_MESSAGE
    assert r.headers["content-type"].startswith("text/plain")
    assert upstream.requests == []
    assert token_provider.calls == 0


def test_chat_completion_scenario(client, upstream):
    r = client.post(
        "/v1/chat/completions",
        headers={"Authorization": "Bearer client-supplied"},
        content=b'{"prompt":"hi"}',
    )

    assert r.status_code == 200, r.text
    echo = r.json()
    assert echo["method"] == "POST"
    assert echo["url"] == "https://aoai.example.com/v1/chat/completions"
    assert echo["body"] == '{"prompt":"hi"}'
    assert _header_values(echo, "authorization") == ["Bearer provider-token"]
    assert "Bearer client-supplied" not in r.text
    assert _header_values(echo, "host") == ["aoai.example.com"]


def test_query_string_preserved(client, upstream):
    client.get("/openai/deployments/gpt-4o/chat/completions?api-version=2024-06-01")

    assert str(upstream.requests[0].url) == (
        "https://aoai.example.com/openai/deployments/gpt-4o/chat/completions"
        "?api-version=2024-06-01"
    )


def test_post_to_root_is_forwarded(client, upstream):
    r = client.post("/", content=b"{}")

    assert r.status_code == 200
    assert upstream.requests[0].url.path == "/"


def test_api_key_not_forwarded(client, upstream):
    r = client.get("/v1/models", headers={"api-key": "client-key"})

    echo = r.json()
    assert _header_values(echo, "api-key") == []
    assert _header_values(echo, "authorization") == ["Bearer provider-token"]


def test_connection_tokens_not_forwarded(client, upstream):
    r = client.get(
        "/v1/models",
        headers={"Connection": "Foo, bar", "foo": "1", "BAR": "2", "x-keep": "3"},
    )

    names = {key for key, _ in r.json()["headers"]}
    assert "foo" not in names
    assert "bar" not in names
    assert "connection" not in names
    assert "x-keep" in names


def test_non_ascii_header_value_forwarded_byte_for_byte(client, upstream):
    r = client.get("/v1/files", headers={"x-filename": "caf\xe9".encode("latin-1")})

    assert r.status_code == 200, r.text
    raw = upstream.requests[0].headers.raw
    assert (b"x-filename", b"caf\xe9") in raw
    assert (b"authorization", b"Bearer provider-token") in raw


@pytest.mark.parametrize("status_code", [201, 204, 404, 429, 500])
def test_upstream_status_mirrored(upstream, client, status_code):
    async def handler(request, body):
        return httpx.Response(status_code)

    upstream.handler = handler

    r = client.post("/v1/files", content=b"data")

    assert r.status_code == status_code


def test_response_headers_sanitized(upstream, client):
    async def handler(request, body):
        return httpx.Response(
            200,
            headers=[
                ("Keep-Alive", "timeout=5"),
                ("Connection", "x-internal"),
                ("X-Internal", "secret"),
                ("Upgrade", "h2c"),
                ("Proxy-Authenticate", "Basic"),
                ("Set-Cookie", "a=1"),
                ("Set-Cookie", "b=2"),
                ("apim-request-id", "abc"),
            ],
            content=b"ok",
        )

    upstream.handler = handler

    r = client.get("/v1/models")

    assert r.text == "ok"
    for name in ("keep-alive", "x-internal", "upgrade", "proxy-authenticate"):
        assert name not in r.headers
    assert r.headers.get_list("set-cookie") == ["a=1", "b=2"]
    assert r.headers["apim-request-id"] == "abc"


def test_streamed_response_body(upstream, client):
    async def events():
        for i in range(5):
            yield f"data: {i}\n\n".encode()
        yield b"data: [DONE]\n\n"

    async def handler(request, body):
        return httpx.Response(
            200, headers={"content-type": "text/event-stream"}, content=events()
        )

    upstream.handler = handler

    with client.stream("POST", "/v1/chat/completions", json={"stream": True}) as r:
        lines = [line for line in r.iter_lines() if line]

    assert lines[-1] == "data: [DONE]"
    assert len(lines) == 6


def test_unreachable_upstream_returns_single_502(upstream, client):
    upstream.error = httpx.ConnectError("Name or service not known")

    r = client.post("/v1/chat/completions", json={"prompt": "hi"})

    assert r.status_code == 502
    assert r.json() == {"error": FORWARDING_FAILED_MESSAGE}
    assert "not known" not in r.text


def test_credential_failure_returns_502(client, upstream, token_provider):
    token_provider.fail = True

    r = client.post(
        "/v1/chat/completions",
        headers={"Authorization": "Bearer client-supplied"},
        json={"prompt": "hi"},
    )

    assert r.status_code == 502
    assert upstream.requests == []


def test_failure_is_isolated_to_its_request(client, upstream):
    upstream.error = httpx.ConnectError("refused")
    assert client.get("/v1/models").status_code == 502

    upstream.error = None
    assert client.get("/v1/models").status_code == 200


def test_shutdown_closes_token_provider(upstream, token_provider):
    app = create_app(
        SETTINGS,
        token_provider=token_provider,
        client=create_upstream_client(transport=upstream),
        instrument=False,
    )
    with TestClient(app):
        pass

    assert token_provider.closed is True


def test_docs_routes_are_forwarded(client, upstream):
    client.get("/docs")

    assert upstream.requests[0].url.path == "/docs"
