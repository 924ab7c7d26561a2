import logging
import socket
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import requests
from requests.packages.urllib3.exceptions import InsecureRequestWarning

from .errors import RequestFailed, TransientDialError

logger = logging.getLogger("crossfire.http")

requests.packages.urllib3.disable_warnings(InsecureRequestWarning)

READ_SIZE = 8192


@dataclass
class ResponseWrapper:
    """What matchers and extractors see: HTTP or raw socket responses alike."""
    status_code: Optional[int]
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    elapsed_ms: float = 0.0
    url: str = ""

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    @property
    def header_text(self) -> str:
        return "\n".join(f"{k}: {v}" for k, v in self.headers.items())

    @property
    def raw_text(self) -> str:
        return f"{self.header_text}\n\n{self.text}"


class HttpClient:
    def __init__(self, timeout: float = 10.0, user_agent: str = "crossfire/1.0",
                 verify: bool = False, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.verify = verify
        self.session = session or requests.Session()
        adapter = requests.adapters.HTTPAdapter(pool_connections=50, pool_maxsize=50)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)
        self.session.headers.update({
            "User-Agent": user_agent,
            "Accept": "*/*",
        })

    def send(self, method: str, url: str, *,
             headers: Optional[Dict[str, str]] = None,
             body: Optional[str] = None,
             timeout: Optional[float] = None,
             allow_redirects: bool = False) -> ResponseWrapper:
        """
        Sends one request. Connection-level failures (refused, reset, TLS) raise
        TransientDialError so callers can tell "never reached the target" apart
        from a bad response; everything else requests raises becomes RequestFailed.
        """
        logger.debug(f"{method.upper()} {url}")
        start = time.time()
        try:
            resp = self.session.request(
                method=method.upper(),
                url=url,
                headers=headers or {},
                data=body.encode("utf-8") if isinstance(body, str) else body,
                timeout=timeout or self.timeout,
                verify=self.verify,
                allow_redirects=allow_redirects,
            )
        except (requests.exceptions.ConnectionError, requests.exceptions.ConnectTimeout) as e:
            raise TransientDialError(f"Could not connect to {url}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise RequestFailed(f"{type(e).__name__} for {url}: {e}") from e
        elapsed = (time.time() - start) * 1000.0

        return ResponseWrapper(
            status_code=resp.status_code,
            headers=dict(resp.headers),
            body=resp.content,
            elapsed_ms=elapsed,
            url=str(resp.url),
        )

    def close(self):
        self.session.close()


def exchange(host: str, port: int, payloads: List[bytes], protocol: str = "tcp",
             timeout: float = 10.0, read_timeout: float = 5.0) -> ResponseWrapper:
    """
    Raw TCP/UDP conversation: send each payload in turn and collect whatever
    comes back. Connect failures raise TransientDialError; a silent or closed
    peer simply ends the exchange.
    """
    start = time.time()
    received = bytearray()
    protocol = protocol.lower()

    if protocol == "udp":
        try:
            family, kind, proto, _, addr = socket.getaddrinfo(host, port, type=socket.SOCK_DGRAM)[0]
            sock = socket.socket(family, kind, proto)
        except OSError as e:
            raise TransientDialError(f"Could not resolve {host}:{port}/udp: {e}") from e
        with sock:
            sock.settimeout(read_timeout)
            for payload in payloads or [b""]:
                try:
                    sock.sendto(payload, addr)
                    data, _ = sock.recvfrom(READ_SIZE * 8)
                    received.extend(data)
                except socket.timeout:
                    break
                except OSError as e:
                    logger.debug(f"UDP exchange with {host}:{port} ended: {e}")
                    break
    else:
        try:
            sock = socket.create_connection((host, port), timeout=timeout)
        except OSError as e:
            raise TransientDialError(f"Could not connect to {host}:{port}: {e}") from e
        with sock:
            sock.settimeout(read_timeout)
            for payload in payloads:
                try:
                    if payload:
                        sock.sendall(payload)
                    data = sock.recv(READ_SIZE)
                except socket.timeout:
                    logger.debug(f"Read timeout from {host}:{port}")
                    break
                except OSError as e:
                    logger.debug(f"Connection to {host}:{port} dropped: {e}")
                    break
                if not data:
                    break
                received.extend(data)
            if not payloads:
                # Banner grab
                try:
                    received.extend(sock.recv(READ_SIZE))
                except OSError:
                    pass

    return ResponseWrapper(
        status_code=None,
        body=bytes(received),
        elapsed_ms=(time.time() - start) * 1000.0,
        url=f"{protocol}://{host}:{port}",
    )
