"""
Mirror-node message transport.

Reads topic messages from a mirror node REST API, resolves large-content
references through a content CDN and submits messages through a relay
endpoint. All HTTP goes through one ``httpx.AsyncClient``.
"""

import base64
import binascii
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

import httpx

from ..constants import CONNECTION_TIMEOUT, LARGE_CONTENT_PREFIX
from ..exceptions import ResolutionError, TransportError
from ..logger import get_logger
from .base import TopicMessage

logger = get_logger(__name__)

MIRROR_PAGE_LIMIT = 100
MIRROR_MAX_PAGES = 50


def parse_consensus_timestamp(raw: Optional[str]) -> float:
    """'1700000000.123456789' → 1700000000.123456789 (epoch seconds)."""
    if not raw:
        return time.time()
    try:
        return float(raw)
    except (TypeError, ValueError):
        return time.time()


def decode_message(raw: Optional[str]) -> str:
    """Decode a mirror node's base64 ``message`` field to text."""
    if not raw:
        return ""
    return base64.b64decode(raw, validate=True).decode("utf-8")


class MirrorNodeTransport:
    """
    HTTP transport backed by a mirror node.

    Args:
        mirror_url:  Mirror node base URL (``https://testnet.mirrornode.hedera.com``)
        submit_url:  Relay accepting ``POST /topics/{id}/messages``
        content_url: CDN serving large content at ``{content_url}/{topic_id}``
        client:      Optional pre-built AsyncClient (shared or mocked)
    """

    def __init__(
        self,
        mirror_url: str,
        submit_url: Optional[str] = None,
        content_url: Optional[str] = None,
        timeout: float = CONNECTION_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.mirror_url = mirror_url.rstrip("/")
        self.submit_url = submit_url.rstrip("/") if submit_url else None
        self.content_url = content_url.rstrip("/") if content_url else None
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    # ── HTTP ──────────────────────────────────────────────────────────

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        start_time = time.time()
        logger.debug(f"--> \"{method} {url} HTTP/1.1\"")
        try:
            response = await self._client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            elapsed = time.time() - start_time
            logger.warning(f"<-- \"{method} {url} HTTP/1.1\" {e.response.status_code} ERROR ({elapsed:.3f}s)")
            raise TransportError(f"{method} {url} failed with status {e.response.status_code}") from e
        except httpx.RequestError as e:
            elapsed = time.time() - start_time
            logger.warning(f"<-- \"{method} {url} HTTP/1.1\" NETWORK_ERROR ({elapsed:.3f}s)")
            raise TransportError(f"{method} {url} unreachable: {e}") from e

        elapsed = time.time() - start_time
        logger.debug(f"<-- \"{method} {url} HTTP/1.1\" {response.status_code} ({elapsed:.3f}s)")
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"Invalid JSON from {response.request.url}: {e}") from e

    # ── MessageTransport ──────────────────────────────────────────────

    async def fetch_messages(self, topic_id: str, since_sequence: Optional[int] = None) -> List[TopicMessage]:
        """Follow mirror-node pagination and return decoded messages, ascending."""
        params: Optional[Dict[str, Any]] = {"order": "asc", "limit": MIRROR_PAGE_LIMIT}
        if since_sequence:
            params["sequencenumber"] = f"gt:{since_sequence}"

        url: Optional[str] = f"{self.mirror_url}/api/v1/topics/{topic_id}/messages"
        messages: List[TopicMessage] = []

        for _ in range(MIRROR_MAX_PAGES):
            if url is None:
                break
            body = self._json(await self._request("GET", url, params=params))
            for raw in body.get("messages") or []:
                message = self._to_message(raw)
                if message is not None:
                    messages.append(message)

            next_link = (body.get("links") or {}).get("next")
            url = urljoin(self.mirror_url + "/", next_link.lstrip("/")) if next_link else None
            params = None  # the next link already carries the query
        else:
            logger.warning(f"Stopped paging {topic_id} after {MIRROR_MAX_PAGES} pages")

        messages.sort(key=lambda m: m.sequence_number)
        return messages

    @staticmethod
    def _to_message(raw: Dict[str, Any]) -> Optional[TopicMessage]:
        sequence = raw.get("sequence_number")
        if sequence is None:
            return None
        try:
            payload = decode_message(raw.get("message"))
        except (binascii.Error, ValueError) as e:
            # Keep the slot so the cursor still moves past it
            logger.warning(f"Failed to decode message seq={sequence}: {e}")
            payload = ""
        return TopicMessage(
            sequence_number=int(sequence),
            payload=payload,
            timestamp=parse_consensus_timestamp(raw.get("consensus_timestamp")),
            payer_account_id=raw.get("payer_account_id"),
        )

    async def send_message(self, topic_id: str, payload: str, memo: Optional[str] = None) -> int:
        if not self.submit_url:
            raise TransportError("No submit URL configured; cannot send messages")
        body = self._json(await self._request(
            "POST",
            f"{self.submit_url}/topics/{topic_id}/messages",
            json={"message": payload, "memo": memo},
        ))
        sequence = body.get("sequenceNumber", body.get("sequence_number"))
        if sequence is None:
            raise TransportError(f"Submit to {topic_id} returned no sequence number")
        return int(sequence)

    async def resolve_reference(self, uri: str) -> str:
        if not uri.startswith(LARGE_CONTENT_PREFIX):
            raise ResolutionError(f"Unsupported content reference: {uri}")
        if not self.content_url:
            raise ResolutionError("No content URL configured; cannot resolve references")

        content_topic = uri[len(LARGE_CONTENT_PREFIX):]
        try:
            response = await self._request("GET", f"{self.content_url}/{content_topic}")
        except TransportError as e:
            raise ResolutionError(f"Could not resolve {uri}: {e}") from e
        return response.text

    def __repr__(self) -> str:
        return f"<MirrorNodeTransport {self.mirror_url}>"
