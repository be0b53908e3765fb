"""
Local proxy chaining for authenticated upstream proxies.

Browsers cannot take proxy credentials on the command line, so an
authenticated upstream is wrapped by an ephemeral proxy on 127.0.0.1 that
adds the ``Proxy-Authorization`` header to every request it forwards.
"""

import asyncio
import base64
from functools import partial
from typing import Any, Optional
from urllib.parse import quote, unquote, urlsplit

from warden.errors import ProxySetupError
from warden.logger import get_logger

logger = get_logger(__name__)

_servers: dict[str, asyncio.AbstractServer] = {}

HEAD_LIMIT = 64 * 1024
PIPE_CHUNK = 64 * 1024


def normalize_proxy(proxy: Any) -> Optional[str]:
    """
    Turn a request's proxy setting into a single URL.

    Accepts a URL string or a mapping with ``url``, ``username`` and
    ``password`` keys.
    """
    if not proxy:
        return None
    if isinstance(proxy, str):
        return proxy
    if isinstance(proxy, dict) and proxy.get("url"):
        url = proxy["url"]
        if "://" not in url:
            url = f"http://{url}"
        username = proxy.get("username")
        if not username:
            return url
        parts = urlsplit(url)
        creds = quote(username, safe="")
        if proxy.get("password"):
            creds += ":" + quote(proxy["password"], safe="")
        return f"{parts.scheme}://{creds}@{parts.netloc}{parts.path}"
    raise ProxySetupError(f"Unsupported proxy setting: {proxy!r}")


async def anonymize_proxy(proxy_url: str) -> str:
    """
    Return a credential-free proxy URL that forwards to ``proxy_url``.

    Proxies without credentials are returned unchanged.

    Raises:
        ProxySetupError: If the URL is not a usable HTTP proxy.
    """
    if "://" not in proxy_url:
        proxy_url = f"http://{proxy_url}"
    try:
        parts = urlsplit(proxy_url)
        host, port = parts.hostname, parts.port or 8080
    except ValueError as e:
        raise ProxySetupError(f"Invalid proxy URL: {e}") from e

    if parts.scheme != "http" or not host:
        raise ProxySetupError(f"Only http:// proxies are supported, got {parts.scheme}")
    if not parts.username:
        return proxy_url

    creds = f"{unquote(parts.username)}:{unquote(parts.password or '')}"
    auth = base64.b64encode(creds.encode("utf-8")).decode("ascii")

    try:
        server = await asyncio.start_server(
            partial(_handle_client, host, port, auth), "127.0.0.1", 0
        )
    except OSError as e:
        raise ProxySetupError(f"Could not open local proxy: {e}") from e

    local_port = server.sockets[0].getsockname()[1]
    local_url = f"http://127.0.0.1:{local_port}"
    _servers[local_url] = server
    logger.debug(f"Proxy chain {local_url} -> {host}:{port}")
    return local_url


async def close_anonymized_proxy(local_url: str) -> bool:
    """Stop a proxy created by ``anonymize_proxy``."""
    server = _servers.pop(local_url, None)
    if server is None:
        return False
    server.close()
    await server.wait_closed()
    return True


def _rewrite_head(head: bytes, auth: str) -> bytes:
    lines = head.rstrip(b"\r\n").split(b"\r\n")
    request_line, headers = lines[0], lines[1:]
    is_connect = request_line.upper().startswith(b"CONNECT ")

    kept = []
    for line in headers:
        name = line.split(b":", 1)[0].strip().lower()
        if name == b"proxy-authorization":
            continue
        # Plain HTTP requests get one request per connection so each carries auth
        if not is_connect and name in (b"connection", b"proxy-connection"):
            continue
        kept.append(line)

    kept.append(f"Proxy-Authorization: Basic {auth}".encode("ascii"))
    if not is_connect:
        kept.append(b"Connection: close")
    return b"\r\n".join([request_line, *kept]) + b"\r\n\r\n"


async def _handle_client(
    upstream_host: str,
    upstream_port: int,
    auth: str,
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
) -> None:
    try:
        head = await reader.readuntil(b"\r\n\r\n")
    except (asyncio.IncompleteReadError, asyncio.LimitOverrunError):
        writer.close()
        return

    if len(head) > HEAD_LIMIT:
        writer.close()
        return

    try:
        up_reader, up_writer = await asyncio.open_connection(
            upstream_host, upstream_port
        )
    except OSError as e:
        logger.warning(f"Upstream proxy {upstream_host}:{upstream_port} unreachable: {e}")
        writer.write(b"HTTP/1.1 502 Bad Gateway\r\nContent-Length: 0\r\n\r\n")
        await _close(writer)
        return

    up_writer.write(_rewrite_head(head, auth))
    await asyncio.gather(_pipe(reader, up_writer), _pipe(up_reader, writer))


async def _pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    try:
        while data := await reader.read(PIPE_CHUNK):
            writer.write(data)
            await writer.drain()
    except ConnectionError:
        pass
    finally:
        await _close(writer)


async def _close(writer: asyncio.StreamWriter) -> None:
    writer.close()
    try:
        await writer.wait_closed()
    except (ConnectionError, OSError):
        pass
