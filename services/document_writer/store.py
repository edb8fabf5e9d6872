"""Document store collaborator backed by the SiYuan kernel API."""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from shared.exceptions import DocumentStoreError

logger = logging.getLogger(__name__)


class DocumentStore(ABC):
    """Operations the sync pipeline needs from the target document store."""

    @abstractmethod
    async def create_document(self, notebook_id: str, path: str, markdown: str) -> str:
        """Create a document from markdown at a human-readable path; returns its ID."""

    @abstractmethod
    async def append_block(self, document_id: str, markdown: str) -> str:
        """Append a markdown block to a document; returns the new block ID."""

    @abstractmethod
    async def resolve_path_by_id(self, document_id: str) -> str:
        """Return the human-readable path of a document."""


class SiyuanDocumentStore(DocumentStore):
    """Talks to a SiYuan kernel over its JSON API."""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        http_client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize the document store client.

        Args:
            base_url: Kernel URL, e.g. http://127.0.0.1:6806
            token: Kernel API token (empty when authentication is off)
            http_client: Optional preconfigured client (used by tests)
        """
        self.base_url = base_url.rstrip('/')
        headers = {"Authorization": f"Token {token}"} if token else {}
        self.http = http_client or httpx.AsyncClient(base_url=self.base_url, headers=headers, timeout=30.0)

    async def aclose(self) -> None:
        await self.http.aclose()

    async def _post(self, endpoint: str, payload: Dict[str, Any]) -> Any:
        try:
            response = await self.http.post(endpoint, json=payload)
        except httpx.HTTPError as e:
            raise DocumentStoreError(f"{endpoint} failed: {e}") from e

        if not response.is_success:
            raise DocumentStoreError(f"{endpoint} failed: HTTP {response.status_code}")

        try:
            result = response.json()
        except ValueError as e:
            raise DocumentStoreError(f"{endpoint} returned invalid JSON: {e}") from e

        if result.get("code") != 0:
            raise DocumentStoreError(f"{endpoint} failed: {result.get('msg')}")
        return result.get("data")

    async def create_document(self, notebook_id: str, path: str, markdown: str) -> str:
        document_id = await self._post("/api/filetree/createDocWithMd", {
            "notebook": notebook_id,
            "path": path,
            "markdown": markdown,
        })
        if not document_id:
            raise DocumentStoreError("createDocWithMd returned no document ID")
        logger.info(f"Created document {document_id} at {path}")
        return str(document_id)

    async def append_block(self, document_id: str, markdown: str) -> str:
        data = await self._post("/api/block/appendBlock", {
            "dataType": "markdown",
            "data": markdown,
            "parentID": document_id,
        })
        # Response is a list of transactions whose operations carry the new block ID
        try:
            return str(data[0]["doOperations"][0]["id"])
        except (IndexError, KeyError, TypeError):
            return ""

    async def resolve_path_by_id(self, document_id: str) -> str:
        hpath = await self._post("/api/filetree/getHPathByID", {"id": document_id})
        if not isinstance(hpath, str):
            raise DocumentStoreError(f"Could not resolve path of document {document_id}")
        return hpath
