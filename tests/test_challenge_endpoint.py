"""Validation channel tests over a real loopback socket."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from proxyctl.certmanager.challenge_server import ChallengeResponder
from proxyctl.errors import ValidationUnreachable

TOKEN = "test-challenge-token"
AUTHORIZATION = "test-challenge-token.test-authorization-key"


async def raw_request(port: int, payload: bytes) -> tuple:
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(payload)
    await writer.drain()
    data = await asyncio.wait_for(reader.read(), timeout=5)
    writer.close()
    await writer.wait_closed()
    head, _, body = data.partition(b"\r\n\r\n")
    status = int(head.split(b" ", 2)[1])
    return status, body


async def get(port: int, path: str, host: str = "app.example", method: str = "GET") -> tuple:
    request = f"{method} {path} HTTP/1.1\r\nHost: {host}\r\nConnection: close\r\n\r\n"
    return await raw_request(port, request.encode("ascii"))


@pytest.mark.challenge
class TestChallengeResponder:

    @pytest.mark.asyncio
    async def test_serves_published_token(self):
        async with ChallengeResponder(host="127.0.0.1", port=0) as responder:
            responder.publish("app.example", TOKEN, AUTHORIZATION)
            status, body = await get(responder.bound_port, f"/.well-known/acme-challenge/{TOKEN}")
        assert status == 200
        assert body.decode() == AUTHORIZATION

    @pytest.mark.asyncio
    async def test_host_header_port_ignored(self):
        async with ChallengeResponder(host="127.0.0.1", port=0) as responder:
            responder.publish("app.example", TOKEN, AUTHORIZATION)
            status, _ = await get(responder.bound_port, f"/.well-known/acme-challenge/{TOKEN}",
                                  host="App.Example:80")
        assert status == 200

    @pytest.mark.asyncio
    async def test_other_host_not_answered(self):
        async with ChallengeResponder(host="127.0.0.1", port=0) as responder:
            responder.publish("app.example", TOKEN, AUTHORIZATION)
            status, _ = await get(responder.bound_port, f"/.well-known/acme-challenge/{TOKEN}",
                                  host="other.example")
        assert status == 404

    @pytest.mark.asyncio
    async def test_unknown_token_and_path(self):
        async with ChallengeResponder(host="127.0.0.1", port=0) as responder:
            status, body = await get(responder.bound_port, "/.well-known/acme-challenge/non-existent-token")
            assert status == 404
            assert body == b"Challenge not found"

            status, _ = await get(responder.bound_port, "/index.html")
            assert status == 404

    @pytest.mark.asyncio
    async def test_only_get_allowed(self):
        async with ChallengeResponder(host="127.0.0.1", port=0) as responder:
            responder.publish("app.example", TOKEN, AUTHORIZATION)
            status, _ = await get(responder.bound_port, f"/.well-known/acme-challenge/{TOKEN}", method="DELETE")
        assert status == 405

    @pytest.mark.asyncio
    async def test_malformed_request(self):
        async with ChallengeResponder(host="127.0.0.1", port=0) as responder:
            status, _ = await raw_request(responder.bound_port, b"NOT HTTP AT ALL\r\n\r\n")
        assert status == 400

    @pytest.mark.asyncio
    async def test_bind_failure_is_unreachable(self):
        async with ChallengeResponder(host="127.0.0.1", port=0) as first:
            second = ChallengeResponder(host="127.0.0.1", port=first.bound_port)
            with pytest.raises(ValidationUnreachable):
                await second.start()
            assert not second.is_running

    @pytest.mark.asyncio
    async def test_stop_forgets_tokens(self):
        responder = ChallengeResponder(host="127.0.0.1", port=0)
        await responder.start()
        responder.publish("app.example", TOKEN, AUTHORIZATION)
        await responder.stop()
        assert responder.lookup("app.example", TOKEN) is None
        assert responder.bound_port is None


@pytest.mark.challenge
class TestChallengeLookup:

    def test_withdraw(self):
        responder = ChallengeResponder()
        responder.publish("app.example", TOKEN, AUTHORIZATION)
        assert responder.lookup("app.example", TOKEN) == AUTHORIZATION
        responder.withdraw(TOKEN)
        assert responder.lookup("app.example", TOKEN) is None

    def test_expired_token(self):
        responder = ChallengeResponder(challenge_ttl=300)
        responder.publish("app.example", TOKEN, AUTHORIZATION)
        responder._challenges[TOKEN] = responder._challenges[TOKEN].model_copy(
            update={"expires_at": datetime.now(timezone.utc) - timedelta(seconds=1)})
        assert responder.lookup("app.example", TOKEN) is None
