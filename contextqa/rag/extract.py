"""Text extraction for uploaded documents.

Handles:
- Plain text passthrough
- Markdown with YAML frontmatter stripped
- PDF text via pypdf
"""
import io
import re
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Any, Dict, Optional, Tuple

import structlog
import yaml
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from contextqa.errors import NoExtractableText, ValidationError

logger = structlog.get_logger()

PLAIN_TEXT = "text/plain"
MARKDOWN = "text/markdown"
PDF = "application/pdf"

SUFFIX_TYPES = {
    ".txt": PLAIN_TEXT,
    ".text": PLAIN_TEXT,
    ".md": MARKDOWN,
    ".markdown": MARKDOWN,
    ".pdf": PDF,
}


@dataclass
class ExtractedText:
    """Text pulled out of a document, plus any frontmatter found."""

    text: str
    content_type: str
    frontmatter: Dict[str, Any] = field(default_factory=dict)


class TextExtractor:
    """Turns raw document bytes into plain text."""

    # Regex for YAML frontmatter (must be at start of file)
    FRONTMATTER_PATTERN = re.compile(
        r"^---\s*\n(.*?)\n---\s*\n", re.DOTALL | re.MULTILINE
    )

    def resolve_content_type(self, filename: str, content_type: Optional[str] = None) -> str:
        """Pick a supported content type from the declared type or the file suffix.

        Raises:
            ValidationError: If the type is not supported
        """
        declared = (content_type or "").split(";")[0].strip().lower()
        if declared in (PLAIN_TEXT, MARKDOWN, PDF):
            return declared

        suffix = PurePath(filename or "").suffix.lower()
        if suffix in SUFFIX_TYPES:
            return SUFFIX_TYPES[suffix]

        raise ValidationError(
            f"Unsupported document type: {content_type or suffix or 'unknown'}",
            field="content_type",
        )

    def extract(
        self, data: bytes, filename: str, content_type: Optional[str] = None
    ) -> ExtractedText:
        """Extract text from document bytes.

        Args:
            data: Raw document bytes
            filename: Original file name (used to infer the type)
            content_type: Declared MIME type, if any

        Returns:
            ExtractedText with non-blank text

        Raises:
            ValidationError: If the document type is not supported
            NoExtractableText: If the document contains no readable text
        """
        resolved = self.resolve_content_type(filename, content_type)

        frontmatter: Dict[str, Any] = {}
        if resolved == PDF:
            text = self._extract_pdf(data, filename)
        else:
            text = data.decode("utf-8", errors="replace")
            if resolved == MARKDOWN:
                frontmatter, text = self._parse_frontmatter(text)

        if not text.strip():
            raise NoExtractableText(
                "Document contains no readable text", {"filename": filename}
            )

        logger.info(
            "document_text_extracted",
            filename=filename,
            content_type=resolved,
            text_length=len(text),
            has_frontmatter=bool(frontmatter),
        )

        return ExtractedText(text=text, content_type=resolved, frontmatter=frontmatter)

    def _extract_pdf(self, data: bytes, filename: str) -> str:
        try:
            reader = PdfReader(io.BytesIO(data))
            parts = []
            for page in reader.pages:
                page_text = page.extract_text() or ""
                if page_text.strip():
                    parts.append(page_text)
        except PdfReadError as e:
            logger.warning("pdf_read_error", filename=filename, error=str(e))
            raise NoExtractableText(
                f"Could not read PDF: {e}", {"filename": filename}
            ) from e

        return "\n\n".join(parts).strip()

    def _parse_frontmatter(self, content: str) -> Tuple[Dict[str, Any], str]:
        """Extract YAML frontmatter from markdown content.

        Args:
            content: Full markdown content

        Returns:
            Tuple of (frontmatter_dict, content_without_frontmatter)
        """
        match = self.FRONTMATTER_PATTERN.match(content)

        if not match:
            return {}, content

        yaml_content = match.group(1)
        try:
            frontmatter = yaml.safe_load(yaml_content)
            if not isinstance(frontmatter, dict):
                frontmatter = {}
        except yaml.YAMLError as e:
            logger.warning(
                "frontmatter_parse_error",
                error=str(e),
                yaml_preview=yaml_content[:100],
            )
            frontmatter = {}

        return frontmatter, content[match.end() :]
