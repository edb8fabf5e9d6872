"""Content Transformer - renders each record type into a markdown fragment."""

import logging
import re
from pathlib import PurePosixPath
from typing import Awaitable, Callable, Dict, Optional

from shared.encryption import XorRecordCipher
from shared.exceptions import (
    DecryptError, DocumentStoreError, NetworkError, ServerError, UploadError
)
from shared.models import ContentType, DecryptionContext, NoteRecord, RenderedFragment, SyncConfig

from services.backend_client.client import BackendClient
from services.content_transformer.assets import AssetStore
from services.document_writer.store import DocumentStore

logger = logging.getLogger(__name__)

# Failures that degrade a record to placeholder text instead of failing it
CONTENT_ERRORS = (DecryptError, DocumentStoreError, NetworkError, ServerError, UploadError)

MARKDOWN_IMAGE = re.compile(r'!\[([^\]]*)\]\((https?://[^)\s]+)((?:\s+"[^"]*")?)\)')
HTML_IMAGE = re.compile(r'(<img\b[^>]*?\bsrc\s*=\s*["\'])(https?://[^"\']+)(["\'])', re.IGNORECASE)

UNTITLED_LINK = "Untitled link"


def failure_placeholder(content_type: ContentType, reason: str) -> str:
    return f"{content_type.value} processing failed: {reason}"


def warning_block(message: str) -> str:
    return f"> Warning: {message}"


def block_reference(document_id: str, title: str) -> str:
    anchor = title.replace('"', "'")
    return f'(({document_id} "{anchor}"))'


def sanitize_title(title: str) -> str:
    """Make a link title safe to use as a single path segment."""
    cleaned = re.sub(r"[/\\\r\n\t]+", " ", title or "").strip()
    return cleaned or UNTITLED_LINK


Handler = Callable[[NoteRecord, SyncConfig, Optional[DecryptionContext], RenderedFragment], Awaitable[str]]


class ContentTransformer:
    """Maps a record's content type to the routine that renders it."""

    def __init__(
        self,
        backend: BackendClient,
        assets: AssetStore,
        documents: DocumentStore,
        cipher: Optional[XorRecordCipher] = None
    ):
        """
        Initialize the transformer.

        Args:
            backend: Client used to fetch images and link snapshots
            assets: Store receiving uploaded images
            documents: Store receiving link sub-documents
            cipher: Record cipher (the capture client's XOR scheme by default)
        """
        self.backend = backend
        self.assets = assets
        self.documents = documents
        self.cipher = cipher or XorRecordCipher()
        self.handlers: Dict[ContentType, Handler] = {
            ContentType.TEXT: self._render_text,
            ContentType.SECRET_TEXT: self._render_secret_text,
            ContentType.IMAGE: self._render_image,
            ContentType.SECRET_IMAGE: self._render_secret_image,
            ContentType.LINK: self._render_link,
        }
        missing = set(ContentType) - set(self.handlers)
        if missing:
            raise RuntimeError(f"No handler for content types: {sorted(t.value for t in missing)}")

    async def transform(
        self,
        record: NoteRecord,
        config: SyncConfig,
        context: Optional[DecryptionContext]
    ) -> RenderedFragment:
        """
        Render one record.

        Content failures (download, upload, decryption, sub-document creation)
        become a visible placeholder in the fragment. Authentication failures
        and unexpected errors propagate to the caller.

        Args:
            record: Record to render
            config: Settings for this pass
            context: Decryption context, or None when no valid salt is configured

        Returns:
            RenderedFragment carrying the markdown body and any warnings
        """
        fragment = RenderedFragment(record_id=record.id, timestamp_ms=record.timestamp_ms, body="")
        handler = self.handlers[record.content_type]

        try:
            fragment.body = await handler(record, config, context, fragment)
        except CONTENT_ERRORS as e:
            logger.error(f"Failed to render {record.content_type.value} record {record.id}: {e}")
            fragment.body = failure_placeholder(record.content_type, str(e))
            fragment.warnings.append(fragment.body)

        return fragment

    async def _render_text(self, record, config, context, fragment) -> str:
        return record.content

    async def _render_secret_text(self, record, config, context, fragment) -> str:
        try:
            if context is None:
                raise DecryptError("no valid salt configured")
            return self.cipher.decrypt_text(record.content, context)
        except DecryptError as e:
            logger.warning(f"Could not decrypt secret text {record.id}: {e}")
            message = f"secret text could not be decrypted ({e}); showing the encrypted content"
            fragment.warnings.append(f"Failed to decrypt record {record.id}: {e}")
            return f"{record.content}\n\n{warning_block(message)}"

    async def _render_image(self, record, config, context, fragment) -> str:
        image = await self.backend.fetch_image_content(record.content)
        asset_path = await self.assets.upload(image.filename, image.data)
        return f"![image]({asset_path})"

    async def _render_secret_image(self, record, config, context, fragment) -> str:
        image = await self.backend.fetch_image_content(record.content)

        try:
            if context is None:
                raise DecryptError("no valid salt configured")
            decrypted = self.cipher.decrypt_image(image.data, context)
        except DecryptError as e:
            logger.warning(f"Could not decrypt secret image {record.id}: {e}")
            fragment.warnings.append(f"Failed to decrypt image {record.id}: {e}")
            asset_path = await self.assets.upload(image.filename, image.data)
            message = f"image could not be decrypted ({e}); the encrypted file was stored instead"
            return f"![image]({asset_path})\n\n{warning_block(message)}"

        filename = f"{PurePosixPath(image.filename).stem or record.id}.{decrypted.extension}"
        asset_path = await self.assets.upload(filename, decrypted.data)
        return f"![image]({asset_path})"

    async def _render_link(self, record, config, context, fragment) -> str:
        link = await self.backend.fetch_link_content(record.id)
        title = sanitize_title(link.title)
        body = await self.localize_images(link.content, fragment)

        parent_path = await self.documents.resolve_path_by_id(config.document_id)
        document_id = await self.documents.create_document(
            config.notebook_id,
            f"{parent_path.rstrip('/')}/{title}",
            body
        )
        return block_reference(document_id, title)

    async def localize_images(self, markdown: str, fragment: Optional[RenderedFragment] = None) -> str:
        """
        Re-host every remote image referenced in a markdown body.

        Each image is downloaded and uploaded to the asset store; an image
        that fails keeps its original remote URL.

        Returns:
            The markdown with successfully re-hosted image URLs replaced
        """
        urls = [m.group(2) for m in MARKDOWN_IMAGE.finditer(markdown)]
        urls += [m.group(2) for m in HTML_IMAGE.finditer(markdown)]

        replacements: Dict[str, str] = {}
        for url in dict.fromkeys(urls):
            try:
                image = await self.backend.fetch_remote_asset(url)
                replacements[url] = await self.assets.upload(image.filename, image.data)
            except (NetworkError, UploadError) as e:
                logger.warning(f"Keeping remote image {url}: {e}")
                if fragment is not None:
                    fragment.warnings.append(f"Could not re-host image {url}: {e}")

        if not replacements:
            return markdown

        def _swap_markdown(match: re.Match) -> str:
            url = replacements.get(match.group(2), match.group(2))
            return f"![{match.group(1)}]({url}{match.group(3)})"

        def _swap_html(match: re.Match) -> str:
            url = replacements.get(match.group(2), match.group(2))
            return f"{match.group(1)}{url}{match.group(3)}"

        markdown = MARKDOWN_IMAGE.sub(_swap_markdown, markdown)
        return HTML_IMAGE.sub(_swap_html, markdown)
