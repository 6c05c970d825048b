from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO

from PIL import Image, UnidentifiedImageError
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from fatural.modules.extraction.errors import EmptyDocument, UnsupportedDocument

_UPSTREAM_FORMATS = {
    "PNG": "image/png",
    "JPEG": "image/jpeg",
    "GIF": "image/gif",
    "WEBP": "image/webp",
}


@dataclass(frozen=True)
class PageImage:
    data: bytes
    media_type: str


def looks_like_pdf_bytes(body: bytes) -> bool:
    if not body:
        return False
    b = body.lstrip()
    if b.startswith(b"\xef\xbb\xbf"):
        b = b[3:].lstrip()
    return b.startswith(b"%PDF")


def looks_like_image_bytes(body: bytes) -> bool:
    if not body:
        return False
    b = body.lstrip()
    return (
        b.startswith(b"\x89PNG\r\n\x1a\n")
        or b.startswith(b"\xff\xd8\xff")
        or b.startswith(b"II*\x00")
        or b.startswith(b"MM\x00*")
        or b.startswith(b"BM")
        or b.startswith((b"GIF87a", b"GIF89a"))
        or (len(b) >= 12 and b.startswith(b"RIFF") and b[8:12] == b"WEBP")
    )


def detect_file_kind(*, filename: str, content_type: str | None, body: bytes) -> str:
    if looks_like_pdf_bytes(body):
        return "pdf"
    if looks_like_image_bytes(body):
        return "image"
    if filename.lower().endswith(".pdf") or (content_type or "").lower().endswith("/pdf"):
        return "bad_pdf_upload"
    if (content_type or "").lower().startswith("image/"):
        return "image"
    return "unknown"


def to_page_image(data: bytes) -> PageImage:
    """Return the image as-is when the upstream accepts its format, else re-encode to PNG."""
    try:
        with Image.open(BytesIO(data)) as img:
            fmt = (img.format or "").upper()
            if fmt in _UPSTREAM_FORMATS:
                return PageImage(data=data, media_type=_UPSTREAM_FORMATS[fmt])
            if img.mode not in {"RGB", "RGBA", "L"}:
                img = img.convert("RGB")
            out = BytesIO()
            img.save(out, format="PNG")
    except (UnidentifiedImageError, OSError) as e:
        raise UnsupportedDocument("File is not a readable image") from e
    return PageImage(data=out.getvalue(), media_type="image/png")


def _pdf_page_images(body: bytes, *, max_pages: int) -> list[PageImage]:
    try:
        reader = PdfReader(BytesIO(body))
        pages = list(reader.pages)
    except (PdfReadError, ValueError, OSError) as e:
        raise UnsupportedDocument("PDF could not be read") from e

    if len(pages) > max_pages:
        raise UnsupportedDocument(f"PDF has {len(pages)} pages (max {max_pages})")

    out: list[PageImage] = []
    for idx, page in enumerate(pages, start=1):
        try:
            embedded = list(page.images)
        except (PdfReadError, ValueError, OSError) as e:
            raise UnsupportedDocument(f"PDF page {idx} images could not be read") from e
        if not embedded:
            raise UnsupportedDocument(f"PDF page {idx} has no scanned image")
        largest = max(embedded, key=lambda f: len(f.data))
        out.append(to_page_image(largest.data))
    return out


def prepare_pages(
    *, body: bytes, filename: str, content_type: str | None, max_pages: int
) -> list[PageImage]:
    """Split an uploaded document into page images, in page order."""
    if not body:
        raise EmptyDocument("Uploaded file is empty")

    kind = detect_file_kind(filename=filename, content_type=content_type, body=body)
    if kind == "pdf":
        pages = _pdf_page_images(body, max_pages=max_pages)
    elif kind == "image":
        pages = [to_page_image(body)]
    elif kind == "bad_pdf_upload":
        raise UnsupportedDocument("Bad upload: expected PDF header (%PDF)")
    else:
        raise UnsupportedDocument("Unsupported file type")

    if not pages:
        raise EmptyDocument("Document has no pages")
    return pages
