"""Temporary HTTP-01 validation channel.

Opened for the duration of one ACME acquisition. The authority fetches
``http://<host>/.well-known/acme-challenge/<token>`` and must receive the key
authorization; anything else gets a 404. Requests are parsed with h11 so the
listener never has to trust raw header bytes.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

import h11

from ..errors import ValidationUnreachable
from ..shared.logger import log_debug, log_info, log_warning
from .models import ChallengeToken

ACME_CHALLENGE_PREFIX = "/.well-known/acme-challenge/"


def _split_host_header(value: str) -> str:
    """Strip an optional port from a Host header value."""
    value = value.strip().lower()
    if value.startswith('['):
        return value.split(']', 1)[0] + ']'
    return value.rsplit(':', 1)[0] if ':' in value else value


class ChallengeResponder:
    """Serves published HTTP-01 key authorizations on the validation port."""

    def __init__(self, host: str = "0.0.0.0", port: int = 80,
                 read_timeout: float = 10.0, challenge_ttl: int = 300):
        self.host = host
        self.port = port
        self.read_timeout = read_timeout
        self.challenge_ttl = challenge_ttl
        self._challenges: Dict[str, ChallengeToken] = {}
        self._server: Optional[asyncio.AbstractServer] = None

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def bound_port(self) -> Optional[int]:
        """Actual listening port (differs from ``port`` when bound to 0)."""
        if not self._server or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    def publish(self, host: str, token: str, authorization: str) -> None:
        """Expose a key authorization for ``token`` on ``host``.

        Safe to call from the ACME worker thread.
        """
        self._challenges[token] = ChallengeToken(
            token=token,
            authorization=authorization,
            host=host.lower(),
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=self.challenge_ttl)
        )
        log_debug("Challenge published", component="challenge_server", host=host, token=token)

    def withdraw(self, token: str) -> None:
        self._challenges.pop(token, None)

    def lookup(self, host: str, token: str) -> Optional[str]:
        """Return the key authorization if ``token`` was published for ``host``."""
        challenge = self._challenges.get(token)
        if not challenge or challenge.host != host:
            return None
        if challenge.expires_at <= datetime.now(timezone.utc):
            self._challenges.pop(token, None)
            return None
        return challenge.authorization

    async def start(self) -> None:
        if self._server:
            return
        try:
            self._server = await asyncio.start_server(self._handle_connection, self.host, self.port)
        except OSError as e:
            raise ValidationUnreachable(f"Cannot open validation port {self.host}:{self.port}: {e}")
        log_info(f"Validation channel listening on {self.host}:{self.bound_port}", component="challenge_server")

    async def stop(self) -> None:
        if not self._server:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        self._challenges.clear()
        log_info("Validation channel closed", component="challenge_server")

    async def __aenter__(self) -> 'ChallengeResponder':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _read_request(self, conn: h11.Connection, reader: asyncio.StreamReader) -> Optional[h11.Request]:
        while True:
            event = conn.next_event()
            if event is h11.NEED_DATA:
                data = await asyncio.wait_for(reader.read(8192), self.read_timeout)
                conn.receive_data(data)
                continue
            if isinstance(event, h11.Request):
                return event
            return None

    def _respond(self, request: h11.Request) -> Tuple[int, bytes]:
        if request.method != b"GET":
            return 405, b"Method not allowed"

        path = request.target.decode('ascii', 'replace').split('?', 1)[0]
        if not path.startswith(ACME_CHALLENGE_PREFIX):
            return 404, b"Not found"

        token = path[len(ACME_CHALLENGE_PREFIX):]
        host_header = next((value for name, value in request.headers if name == b"host"), b"")
        host = _split_host_header(host_header.decode('ascii', 'replace'))

        authorization = self.lookup(host, token)
        if authorization is None:
            log_warning("Challenge not found", component="challenge_server", host=host, token=token)
            return 404, b"Challenge not found"

        log_info("Challenge served", component="challenge_server", host=host, token=token)
        return 200, authorization.encode('ascii')

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        conn = h11.Connection(h11.SERVER)
        try:
            request = await self._read_request(conn, reader)
            if request is None:
                return
            status, body = self._respond(request)
            headers = [
                ("content-type", "text/plain"),
                ("content-length", str(len(body))),
                ("connection", "close"),
            ]
            writer.write(conn.send(h11.Response(status_code=status, headers=headers)))
            writer.write(conn.send(h11.Data(data=body)))
            writer.write(conn.send(h11.EndOfMessage()))
            await writer.drain()
        except h11.RemoteProtocolError as e:
            log_debug(f"Malformed validation request: {e}", component="challenge_server")
            writer.write(b"HTTP/1.1 400 Bad Request\r\nContent-Length: 17\r\nConnection: close\r\n\r\nMalformed request")
            await writer.drain()
        except (asyncio.TimeoutError, ConnectionError) as e:
            log_debug(f"Validation connection dropped: {e}", component="challenge_server")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass
