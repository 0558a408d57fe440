#!/usr/bin/env python3
"""
Body Extractor Module

Turns a message entity into a single human-readable rendition of its primary content:
plain text, "[HTML] "-tagged markup, a list of image URLs for image-only messages, or a
fixed marker when nothing usable is found. Also classifies the rendition with a short tag
for logging.

The pipeline is Content-Type resolution, one-level multipart splitting, plain/HTML
selection and the image-only heuristic. Nothing here touches the network, the disk or a
logger: every degradation is turned into a result plus advisory notes for the caller.
"""

import email.errors
import email.message
import email.parser
import email.utils
import enum
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from html_content import extract_image_sources_strict
from message_entity import BodyAlreadyConsumedError, BodyStream, MessageEntity, raw_header_policy, split_header_block

HTML_PREFIX = "[HTML] "
NO_BODY = "[No Body]"
BODY_READ_ERROR = "[Body Read Error]"
MULTIPART_NO_TEXT = "[Multipart: No plain or HTML body detected]"
IMAGE_ONLY_MARKER = "[Image-based"
IMAGE_URLS_LEAD = "[Image-based message]\nImage URLs:\n"
IMAGE_ONLY_PLACEHOLDER = "[Image-based body. Please view it in a mail client]"

# RFC 2045 token characters, lowercased
_MEDIA_TYPE_PATTERN = re.compile(r"^[!#$%&'*+.^_`|~0-9a-z-]+/[!#$%&'*+.^_`|~0-9a-z-]+$")


class BodyTag(enum.Enum):
    """Short classification of an extracted body, used in log lines"""

    EMPTY = "[EMPTY]"
    HTML = "[HTML]"
    IMG_ONLY = "[IMG-ONLY]"
    MULTIPART = "[MULTIPART]"
    PLAIN = "[PLAIN]"

    def __str__(self) -> str:
        return self.value


class ResultKind(enum.Enum):
    """Every form extract_primary_text can produce"""

    PLAIN = "plain"
    HTML = "html"
    IMAGE_URLS = "image_urls"
    IMAGE_PLACEHOLDER = "image_placeholder"
    NO_BODY = "no_body"
    READ_ERROR = "read_error"
    MULTIPART_NO_TEXT = "multipart_no_text"


_KIND_TAGS = {
    ResultKind.PLAIN: BodyTag.PLAIN,
    ResultKind.HTML: BodyTag.HTML,
    ResultKind.IMAGE_URLS: BodyTag.IMG_ONLY,
    ResultKind.IMAGE_PLACEHOLDER: BodyTag.IMG_ONLY,
    ResultKind.NO_BODY: BodyTag.PLAIN,
    ResultKind.READ_ERROR: BodyTag.PLAIN,
    ResultKind.MULTIPART_NO_TEXT: BodyTag.MULTIPART,
}


@dataclass(frozen=True)
class ExtractionResult:
    """Extracted body text tagged with the form it takes"""

    kind: ResultKind
    text: str
    notes: Tuple[str, ...] = ()

    @property
    def tag(self) -> BodyTag:
        if not self.text:
            return BodyTag.EMPTY
        return _KIND_TAGS[self.kind]


@dataclass
class ContentTypeInfo:
    """Parsed Content-Type header"""

    media_type: str = ""
    params: Dict[str, str] = field(default_factory=dict)

    @property
    def is_multipart(self) -> bool:
        return self.media_type.startswith("multipart/")

    @property
    def boundary(self) -> str:
        return self.params.get("boundary", "")

    @property
    def charset(self) -> str:
        return self.params.get("charset", "")


class BodyPart(MessageEntity):
    """One sub-part of a multipart body, positioned by wire order"""

    def __init__(self, headers: email.message.Message, body: BodyStream, index: int = 0):
        super().__init__(headers, body)
        self.index = index


@dataclass
class MultipartWalk:
    """Parts read from a multipart body and whether framing finished cleanly"""

    parts: Tuple[BodyPart, ...] = ()
    complete: bool = True
    problem: Optional[str] = None


def resolve_content_type(header_value: Optional[str]) -> ContentTypeInfo:
    """
    Parse a Content-Type header value into a media type and its parameters.

    Args:
        header_value: Raw header value, possibly empty or None

    Returns:
        ContentTypeInfo: Lowercased media type and parameters, or an empty
        ContentTypeInfo when the header is absent or malformed
    """
    if not header_value or not header_value.strip():
        return ContentTypeInfo()

    holder = email.message.Message(policy=raw_header_policy)
    holder["Content-Type"] = header_value
    try:
        raw_params = holder.get_params(header="content-type")
    except (ValueError, TypeError, IndexError):
        return ContentTypeInfo()

    if not raw_params:
        return ContentTypeInfo()

    media_type = raw_params[0][0].strip().lower()
    if not _MEDIA_TYPE_PATTERN.match(media_type):
        return ContentTypeInfo()

    params = {}
    for name, value in raw_params[1:]:
        name = name.strip().lower()
        if not name:
            continue
        if isinstance(value, tuple):
            # RFC 2231 (charset, language, value) triple
            value = email.utils.collapse_rfc2231_value(value)
        params[name] = value

    return ContentTypeInfo(media_type, params)


class _FramedPart(email.message.Message):
    """Message part that can hand back its body bytes as they were framed"""

    def raw_body(self) -> bytes:
        if self.is_multipart():
            # Nested multipart and message/* parts stay opaque; their body is regenerated
            return split_header_block(self.as_bytes())[1]
        return (self._payload or "").encode("ascii", errors="surrogateescape")


def _has_defect(message: email.message.Message, defect_type) -> bool:
    return any(isinstance(defect, defect_type) for defect in message.defects)


def _container_header(boundary: str) -> bytes:
    quoted = email.utils.quote(boundary).encode("utf-8", errors="surrogateescape")
    return b'Content-Type: multipart/mixed; boundary="' + quoted + b'"\r\n\r\n'


def walk_multipart(body: BodyStream, boundary: str) -> MultipartWalk:
    """
    Split a multipart body into its parts, reading the stream once.

    Framing is done by the email package's parser. Only the direct children are
    returned: a nested multipart part comes back as an opaque part. Malformed
    framing never raises; whatever parts were fully framed are returned with
    complete=False and a description of the problem.

    Args:
        body: Read-once body stream of the multipart entity
        boundary: Value of the boundary parameter, surrogate-escaped if it held 8-bit bytes

    Returns:
        MultipartWalk: Parts in wire order plus completion status
    """
    if not boundary:
        return MultipartWalk((), False, "multipart boundary parameter is missing")

    try:
        header = _container_header(boundary)
    except UnicodeEncodeError as e:
        return MultipartWalk((), False, f"multipart boundary cannot be encoded: {e}")

    try:
        data = body.read_all()
    except (OSError, BodyAlreadyConsumedError) as e:
        return MultipartWalk((), False, f"failed to read multipart body: {e}")

    parser = email.parser.BytesParser(_class=_FramedPart, policy=raw_header_policy)
    container = parser.parsebytes(header + data)

    if _has_defect(container, email.errors.StartBoundaryNotFoundDefect) or not container.is_multipart():
        return MultipartWalk((), False, "no multipart boundary delimiter found")

    children = container.get_payload()
    complete = not _has_defect(container, email.errors.CloseBoundaryNotFoundDefect)
    if not complete:
        # The last child ran into the end of the stream
        children = children[:-1]

    parts = tuple(
        BodyPart(child, BodyStream.from_bytes(child.raw_body()), index)
        for index, child in enumerate(children)
    )
    if complete:
        return MultipartWalk(parts, True, None)
    return MultipartWalk(parts, False, "multipart body ended before the closing boundary")


def decode_body(data: bytes, charset: str = "") -> str:
    """
    Decode body bytes with the declared charset.

    An unknown or unusable charset, or bytes the charset cannot decode, fall back
    to UTF-8. Bytes that are not valid UTF-8 either become U+FFFD, so the text is
    byte-exact only for bodies that decode cleanly.
    """
    try:
        return data.decode(charset or "utf-8")
    except (ValueError, LookupError):
        # ValueError covers UnicodeDecodeError and charset names the codec registry rejects
        return data.decode("utf-8", errors="replace")


def looks_image_only(html: str) -> bool:
    """An HTML body with <img tags and no <p> paragraph is treated as image-only content"""
    return "<img" in html and "<p>" not in html


def extract_image_sources(html: str) -> List[str]:
    """
    Collect image URLs with a forward-only scan over the raw markup.

    For every "<img" the first 'src="' after it is captured up to the closing quote.
    The scan stops for good at the first "<img" that has no double-quoted src after it,
    so later images are not reported. This is a heuristic, not an HTML parser.

    Args:
        html: Raw HTML text

    Returns:
        list: URLs in document order, duplicates included
    """
    urls = []
    start = 0
    while True:
        img_index = html.find("<img", start)
        if img_index == -1:
            break
        src_index = html.find('src="', img_index)
        if src_index == -1:
            break
        value_start = src_index + len('src="')
        value_end = html.find('"', value_start)
        if value_end == -1:
            break
        urls.append(html[value_start:value_end])
        start = value_end
    return urls


def classify_preview(text: str) -> BodyTag:
    """
    Map extracted body text to its classification tag.

    Args:
        text: Output of extract_primary_text (its text field)

    Returns:
        BodyTag: First matching tag in EMPTY, HTML, IMG_ONLY, MULTIPART, PLAIN order
    """
    if not text:
        return BodyTag.EMPTY
    if text.startswith("[HTML]"):
        return BodyTag.HTML
    if text.startswith(IMAGE_ONLY_MARKER):
        return BodyTag.IMG_ONLY
    if text.startswith("[Multipart"):
        return BodyTag.MULTIPART
    return BodyTag.PLAIN


class BodyExtractor:
    """Selects the primary content of a message entity, preferring text/plain over text/html"""

    SCAN_MODES = ("forward", "strict")

    def __init__(self, image_scan_mode: str = "forward"):
        """
        Args:
            image_scan_mode: "forward" for the raw-markup scan, "strict" to tokenize
                <img> tags with an HTML parser
        """
        if image_scan_mode not in self.SCAN_MODES:
            raise ValueError(
                f"Unknown image scan mode '{image_scan_mode}'. Supported modes: {', '.join(self.SCAN_MODES)}"
            )
        self.image_scan_mode = image_scan_mode

    def extract_primary_text(self, entity: MessageEntity) -> ExtractionResult:
        """
        Extract the primary text of a message entity.

        The entity's body stream is consumed.

        Args:
            entity: Parsed message entity

        Returns:
            ExtractionResult: Tagged text plus notes about anything that degraded
        """
        header_value = entity.get_raw("Content-Type")
        info = resolve_content_type(header_value)

        if info.is_multipart:
            return self._extract_from_multipart(entity, info)

        if info.media_type in ("text/plain", "text/html"):
            return self._extract_from_single(entity, info)

        notes = ()
        if header_value.strip() and not info.media_type:
            notes = (f"Unparseable Content-Type header: {header_value!r}",)
        return ExtractionResult(ResultKind.NO_BODY, NO_BODY, notes)

    def find_image_sources(self, html: str) -> List[str]:
        if self.image_scan_mode == "strict":
            return extract_image_sources_strict(html)
        return extract_image_sources(html)

    def _extract_from_multipart(self, entity: MessageEntity, info: ContentTypeInfo) -> ExtractionResult:
        walk = walk_multipart(entity.body, info.boundary)
        notes = []
        if not walk.complete:
            notes.append(f"Multipart traversal incomplete after {len(walk.parts)} part(s): {walk.problem}")

        typed_parts = [(part, resolve_content_type(part.get_raw("Content-Type"))) for part in walk.parts]

        for wanted in ("text/plain", "text/html"):
            for part, part_info in typed_parts:
                if part_info.media_type != wanted:
                    continue
                try:
                    text = decode_body(part.body.read_all(), part_info.charset)
                except (OSError, BodyAlreadyConsumedError) as e:
                    notes.append(f"Failed to read part {part.index} ({wanted}): {e}")
                    continue

                if wanted == "text/plain":
                    return ExtractionResult(ResultKind.PLAIN, text, tuple(notes))
                return ExtractionResult(ResultKind.HTML, HTML_PREFIX + text, tuple(notes))

        notes.append("No usable part (text/plain or text/html) found in multipart message")
        return ExtractionResult(ResultKind.MULTIPART_NO_TEXT, MULTIPART_NO_TEXT, tuple(notes))

    def _extract_from_single(self, entity: MessageEntity, info: ContentTypeInfo) -> ExtractionResult:
        try:
            text = decode_body(entity.body.read_all(), info.charset)
        except (OSError, BodyAlreadyConsumedError) as e:
            return ExtractionResult(ResultKind.READ_ERROR, BODY_READ_ERROR, (f"Failed to read entity body: {e}",))

        if info.media_type == "text/plain":
            return ExtractionResult(ResultKind.PLAIN, text)

        if looks_image_only(text):
            urls = self.find_image_sources(text)
            if urls:
                return ExtractionResult(ResultKind.IMAGE_URLS, IMAGE_URLS_LEAD + "\n".join(urls))
            return ExtractionResult(ResultKind.IMAGE_PLACEHOLDER, IMAGE_ONLY_PLACEHOLDER)

        return ExtractionResult(ResultKind.HTML, HTML_PREFIX + text)


_default_extractor = BodyExtractor()


def extract_primary_text(entity: MessageEntity) -> ExtractionResult:
    """Extract the primary text of an entity using the forward-only image scan"""
    return _default_extractor.extract_primary_text(entity)
