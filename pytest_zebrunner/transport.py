import json
from typing import NamedTuple, Optional

import requests
import structlog

LOG = structlog.get_logger()


class Exchange(NamedTuple):
    body: Optional[bytes]
    status_code: Optional[int]
    error: Optional[Exception]

    @property
    def ok(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300


class HTTPTransport:
    """Sends each request synchronously and waits for its response.

    Failures never raise: connection problems come back as ``Exchange.error``
    and non-2xx responses are logged and returned as they are.
    """

    def __init__(self, timeout: Optional[float] = None, session: Optional[requests.Session] = None) -> None:
        self.timeout = timeout
        self.session = session or requests.Session()

    def execute(self, request: requests.Request) -> Exchange:
        prepared = self.session.prepare_request(request)
        try:
            resp = self.session.send(prepared, timeout=self.timeout)
        except requests.RequestException as e:
            LOG.error("Request failed", method=prepared.method, url=prepared.url, error=str(e))
            return Exchange(body=None, status_code=None, error=e)

        exchange = Exchange(body=resp.content, status_code=resp.status_code, error=None)
        if not exchange.ok:
            log_unexpected_response(prepared.url, exchange)
        return exchange

    def close(self) -> None:
        self.session.close()


def log_unexpected_response(url: Optional[str], exchange: Exchange) -> None:
    details = None
    if exchange.body:
        try:
            decoded = json.loads(exchange.body)
        except ValueError:
            decoded = None
        if isinstance(decoded, dict):
            details = decoded
    LOG.warning("Unexpected response code", status_code=exchange.status_code, url=url, data=details)
