"""Note Push backend client - lists, fetches and acknowledges captured records."""

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import unquote, urlparse

import httpx

from shared.exceptions import AuthError, NetworkError, ServerError
from shared.models import ImageContent, LinkContent, NoteRecord, Quota, parse_timestamp

logger = logging.getLogger(__name__)

RECORDS_PATH = "/api/v1/note/records"
LINK_PATH = "/api/v1/note/links/{record_id}"
QUOTA_PATH = "/api/v1/user/quota"

AUTH_FAILED_MESSAGE = "Token validation failed, please reconfigure the token"
SERVER_BUSY_MESSAGE = "Server busy, please try again later"

_FILENAME_STAR = re.compile(r"filename\*\s*=\s*(?:[\w-]+'[^']*')?([^;]+)", re.IGNORECASE)
_FILENAME = re.compile(r'filename\s*=\s*"?([^";]+)"?', re.IGNORECASE)


def parse_content_disposition(header: Optional[str]) -> Optional[str]:
    """
    Extract the filename from a Content-Disposition header.

    Args:
        header: Raw header value, e.g. 'attachment; filename="a.jpg"'

    Returns:
        The filename, or None if the header carries none
    """
    if not header:
        return None
    match = _FILENAME_STAR.search(header)
    if match:
        return unquote(match.group(1).strip().strip('"')) or None
    match = _FILENAME.search(header)
    if match:
        return match.group(1).strip() or None
    return None


class BackendClient:
    """Authenticated client for the Note Push backend REST API."""

    def __init__(
        self,
        token: str,
        base_url: str,
        timeout: float = 5.0,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize the backend client.

        Args:
            token: Bearer token issued by the backend
            base_url: Backend base URL
            timeout: Request timeout in seconds
            http_client: Optional preconfigured client (used by tests)
        """
        self.token = token
        self.base_url = base_url.rstrip('/')
        self.http = http_client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    def update_token(self, token: str) -> None:
        self.token = token

    async def aclose(self) -> None:
        await self.http.aclose()

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code == 401:
            raise AuthError(AUTH_FAILED_MESSAGE)
        if response.status_code == 400:
            message = None
            try:
                body = response.json()
                if isinstance(body, dict):
                    message = body.get("message")
            except ValueError:
                pass
            raise ServerError(message or response.text or "Bad request")
        if not response.is_success:
            logger.error(f"Backend returned HTTP {response.status_code} for {response.request.url}")
            raise NetworkError(SERVER_BUSY_MESSAGE)

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        """
        Send an authenticated request to the backend and unwrap its envelope.

        Returns:
            The envelope's "data" member

        Raises:
            AuthError: On HTTP 401
            ServerError: On HTTP 400 or a non-zero envelope code
            NetworkError: On any other failure
        """
        url = f"{self.base_url}{path}"
        try:
            response = await self.http.request(method, url, headers=self._auth_headers(), **kwargs)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.error(f"Request to {url} failed: {e}")
            raise NetworkError(SERVER_BUSY_MESSAGE) from e

        self._raise_for_status(response)

        try:
            body = response.json()
        except ValueError as e:
            raise NetworkError(f"Backend returned invalid JSON: {e}") from e

        if not isinstance(body, dict):
            raise NetworkError("Backend returned an unexpected response")

        code = body.get("code", 0)
        if code not in (0, None):
            raise ServerError(body.get("message") or f"Backend error code {code}")

        return body.get("data")

    async def list_pending_records(self) -> List[NoteRecord]:
        """
        List records the backend has not seen acknowledged yet, in backend order.

        Records with an unsupported content type are skipped and stay pending.
        """
        data = await self._request("GET", RECORDS_PATH)
        items = data.get("list") if isinstance(data, dict) else None

        records = []
        for item in items or []:
            try:
                records.append(NoteRecord.from_api(item))
            except (KeyError, ValueError, TypeError, AttributeError) as e:
                record_id = item.get("id", "unknown") if isinstance(item, dict) else "unknown"
                logger.warning(f"Skipping unsupported record {record_id}: {e}")

        logger.info(f"Backend returned {len(records)} pending records")
        return records

    async def fetch_image_content(self, reference: str) -> ImageContent:
        """
        Download an image attached to a record.

        Args:
            reference: Absolute URL (or backend path) of the image

        Raises:
            AuthError: On HTTP 401
            NetworkError: On transport failure, error status or missing filename
        """
        url = reference if reference.startswith(("http://", "https://")) else f"{self.base_url}{reference}"
        try:
            response = await self.http.get(url, headers=self._auth_headers())
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise NetworkError(f"Failed to download image: {e}") from e

        if response.status_code == 401:
            raise AuthError(AUTH_FAILED_MESSAGE)
        if not response.is_success:
            raise NetworkError(f"Failed to download image: HTTP {response.status_code}")

        filename = parse_content_disposition(response.headers.get("Content-Disposition"))
        if not filename:
            raise NetworkError("Failed to download image: response has no Content-Disposition filename")

        return ImageContent(filename=filename, data=response.content)

    async def fetch_link_content(self, record_id: str) -> LinkContent:
        """Fetch the rendered markdown snapshot of a link record."""
        data = await self._request("GET", LINK_PATH.format(record_id=record_id))
        if not isinstance(data, dict):
            raise NetworkError(f"Link content for record {record_id} is missing")
        return LinkContent(
            title=(data.get("title") or "").strip(),
            content=data.get("content") or "",
        )

    async def fetch_remote_asset(self, url: str) -> ImageContent:
        """
        Download a third-party image referenced inside a link snapshot.

        The bearer token is not sent to third-party hosts.
        """
        try:
            response = await self.http.get(url)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise NetworkError(f"Failed to download {url}: {e}") from e

        if not response.is_success:
            raise NetworkError(f"Failed to download {url}: HTTP {response.status_code}")

        filename = parse_content_disposition(response.headers.get("Content-Disposition"))
        if not filename:
            filename = unquote(urlparse(url).path.rsplit("/", 1)[-1]) or "image"
        return ImageContent(filename=filename, data=response.content)

    async def acknowledge(self, ids: List[str]) -> None:
        """
        Mark records as consumed so the backend never returns them again.

        Only call this with IDs that are durably written to the document.
        """
        if not ids:
            return
        await self._request("POST", RECORDS_PATH, json={"ids": list(ids)})
        logger.info(f"Acknowledged {len(ids)} records")

    async def get_quota(self) -> Quota:
        """Fetch account quota; doubles as a token validity check."""
        data = await self._request("GET", QUOTA_PATH)
        if not isinstance(data, dict):
            raise NetworkError("Quota information is missing")

        note_quota = data.get("noteQuota") or {}
        link_quota = data.get("linkQuota") or {}
        paid_expires_at: Optional[datetime] = None
        if data.get("paidExpiresAt"):
            try:
                paid_expires_at = parse_timestamp(data["paidExpiresAt"])
            except ValueError:
                logger.warning(f"Ignoring malformed paidExpiresAt: {data['paidExpiresAt']!r}")

        return Quota(
            user_id=str(data.get("userId") or ""),
            paid_expires_at=paid_expires_at,
            note_used=int(note_quota.get("used") or 0),
            note_limit=note_quota.get("limit"),
            link_used=int(link_quota.get("used") or 0),
            link_limit=link_quota.get("limit"),
        )
