"""HTTP client for the FIVB VIS XML web service.

Each request is a single ``<Request .../>`` element passed in the ``Request``
query parameter; responses are XML whose elements carry one record each in
their attributes.

Usage:
    >>> with VisClient() as client:
    ...     matches = client.get_match_list(["No", "TeamNameA", "TeamNameB"])
    ...     detail = client.get_match(matches[0]["No"], ["No", "DateLocal"])
"""

import logging
import xml.etree.ElementTree as ET
from typing import Any

import httpx

from ..errors import RemoteRequestError, TransientRemoteError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://www.fivb.org/Vis2009/XmlRequest.asmx"

# Retryable HTTP statuses
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

Record = dict[str, str]


class VisClient:
    """Thin wrapper around httpx for VIS requests.

    Network failures and retryable statuses raise TransientRemoteError; any
    other failure raises RemoteRequestError. Retrying and pacing are the
    caller's job (see RetryRateLimiter).
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        http_client: httpx.Client | None = None,
    ):
        """Initialize VIS client.

        Args:
            base_url: XmlRequest endpoint URL
            timeout: Request timeout in seconds
            http_client: Pre-built httpx client (tests pass a MockTransport)
        """
        self.base_url = base_url
        self.timeout = timeout
        self._client = http_client

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.Client(
                timeout=self.timeout,
                headers={"Accept": "application/xml"},
                follow_redirects=True,
            )
        return self._client

    def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()

    # =========================================================================
    # ENTITY REQUESTS
    # =========================================================================

    def get_tournament_list(self, fields: list[str]) -> list[Record]:
        """Fetch all volleyball tournaments."""
        return self.request("GetVolleyTournamentList", fields=fields)

    def get_match_list(self, fields: list[str]) -> list[Record]:
        """Fetch all volleyball matches."""
        return self.request("GetVolleyMatchList", fields=fields)

    def get_match(self, match_no: int, fields: list[str]) -> list[Record]:
        """Fetch the detail record(s) of one match."""
        return self.request("GetVolleyMatch", fields=fields, No=match_no)

    def get_tournament_ranking(self, tournament_no: int, fields: list[str]) -> list[Record]:
        """Fetch the final ranking of one tournament."""
        return self.request("GetVolleyTournamentRanking", fields=fields, No=tournament_no)

    # =========================================================================
    # LOW LEVEL
    # =========================================================================

    def request(self, request_type: str, fields: list[str] | None = None, **attrs: Any) -> list[Record]:
        """Send one VIS request and parse the records from the response.

        Args:
            request_type: VIS request type (e.g., "GetVolleyMatchList")
            fields: Attribute names to return
            **attrs: Additional request attributes (e.g., No=123)

        Returns:
            List of records (attribute name -> string value)

        Raises:
            TransientRemoteError: On network errors or retryable statuses
            RemoteRequestError: On other HTTP errors or malformed payloads
        """
        request_xml = build_request_xml(request_type, fields, **attrs)
        logger.debug(f"VIS request: {request_xml}")

        try:
            response = self._get_client().get(self.base_url, params={"Request": request_xml})
        except httpx.TransportError as e:
            raise TransientRemoteError(f"{request_type}: {e}") from e

        if response.status_code in TRANSIENT_STATUS_CODES:
            raise TransientRemoteError(
                f"{request_type}: HTTP {response.status_code}", status_code=response.status_code
            )
        if response.is_error:
            raise RemoteRequestError(
                f"{request_type}: HTTP {response.status_code}", status_code=response.status_code
            )

        return parse_records(response.text, request_type)


def build_request_xml(request_type: str, fields: list[str] | None = None, **attrs: Any) -> str:
    """Serialize a VIS ``<Request/>`` element."""
    element = ET.Element("Request", {"Type": request_type})
    for key, value in attrs.items():
        element.set(key, str(value))
    if fields:
        element.set("Fields", " ".join(fields))
    return ET.tostring(element, encoding="unicode")


def parse_records(payload: str, request_type: str = "request") -> list[Record]:
    """Parse VIS XML into records.

    A root with child elements yields one record per child; a childless root
    with attributes is a single record (e.g., GetVolleyMatch). A ``Responses``
    wrapper is unwrapped.

    Raises:
        RemoteRequestError: If the payload is not XML or is an error document
    """
    try:
        root = ET.fromstring(payload)
    except ET.ParseError as e:
        raise RemoteRequestError(f"{request_type}: malformed XML response: {e}") from e

    if root.tag == "Responses":
        children = list(root)
        if not children:
            return []
        root = children[0]

    if root.tag in ("Error", "Errors"):
        detail = root.get("Message") or root.text or "unknown error"
        raise RemoteRequestError(f"{request_type}: VIS error: {detail.strip()}")

    children = [child for child in root if child.attrib]
    if children:
        return [dict(child.attrib) for child in children]
    if len(root) == 0 and root.attrib:
        return [dict(root.attrib)]
    return []
