"""Source text extraction: plain text files, PDFs, web pages, paper records.

Web fetching security requirements:
- SSRF guard: ipaddress module blocks private/loopback/link-local ranges before
  any connection is established.
- Allowed URL schemes: https:// and http:// only.
- Content-Type whitelist: text/html and text/plain only.
- Max response body: 5 MB.
- Timeout: 30 seconds (connect + read).
- Max redirects: 3.
"""

from __future__ import annotations

import ipaddress
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from http.client import HTTPResponse
from pathlib import Path

import html2text
import pypdf
from bs4 import BeautifulSoup

_USER_AGENT = "scribe/0.1"
_MAX_BYTES = 5 * 1024 * 1024  # 5 MB
_TIMEOUT = 30  # seconds
_MAX_REDIRECTS = 3
_ALLOWED_SCHEMES = {"https", "http"}
_ALLOWED_CONTENT_TYPES = {"text/html", "text/plain"}
_TEXT_SUFFIXES = {".txt", ".md", ".rst", ".text"}

# html2text converter
_h2t = html2text.HTML2Text()
_h2t.ignore_links = True
_h2t.ignore_images = True
_h2t.body_width = 0


class SsrfError(ValueError):
    """Raised when a URL resolves to a private or reserved address."""


@dataclass
class ExtractedDocument:
    """Plain text plus the descriptive fields of its source."""

    kind: str  # pdf | web_page | text | paper
    title: str
    text: str
    path: str = ""
    author: str | None = None
    url: str | None = None
    year: int | None = None

    @property
    def locator(self) -> str:
        """Stable identity of the source within a project."""
        return self.url or self.path or self.title

    @property
    def word_count(self) -> int:
        return len(self.text.split())


# ------------------------------------------------------------------
# Local files
# ------------------------------------------------------------------


def extract_file(path: Path | str) -> ExtractedDocument:
    """Dispatch on file suffix: ``.pdf`` to pypdf, known text suffixes read as UTF-8.

    Raises:
        ValueError: Unsupported file type.
    """
    p = Path(path)
    suffix = p.suffix.lower()
    if suffix == ".pdf":
        return extract_pdf(p)
    if suffix in _TEXT_SUFFIXES:
        return extract_text_file(p)
    raise ValueError(
        f"Unsupported file type '{suffix or p.name}'. "
        f"Supported: .pdf, {', '.join(sorted(_TEXT_SUFFIXES))}"
    )


def extract_text_file(path: Path | str) -> ExtractedDocument:
    p = Path(path)
    return ExtractedDocument(
        kind="text",
        title=p.stem,
        text=p.read_text(encoding="utf-8", errors="replace"),
        path=str(p),
    )


def extract_pdf(path: Path | str) -> ExtractedDocument:
    """Extract all page text from the PDF at *path*.

    Pages that yield no text (scanned images, etc.) are skipped. The title
    comes from the document metadata when present, else the file name.
    """
    p = Path(path)
    reader = pypdf.PdfReader(str(p))
    parts: list[str] = []
    for page in reader.pages:
        stripped = (page.extract_text() or "").strip()
        if stripped:
            parts.append(stripped)

    meta = reader.metadata
    title = (meta.title if meta and meta.title else "") or p.stem
    author = meta.author if meta and meta.author else None
    return ExtractedDocument(
        kind="pdf",
        title=title,
        text="\n\n".join(parts),
        path=str(p),
        author=author,
    )


def paper_document(
    title: str,
    abstract: str | None = None,
    *,
    authors: str | None = None,
    url: str | None = None,
    year: int | None = None,
) -> ExtractedDocument:
    """Build a document for an academic paper record from its title and abstract."""
    return ExtractedDocument(
        kind="paper",
        title=title,
        text=f"{title}\n\n{abstract or ''}",
        author=authors,
        url=url,
        year=year,
    )


# ------------------------------------------------------------------
# Web pages
# ------------------------------------------------------------------


def fetch_web_page(url: str) -> ExtractedDocument:
    """Validate, fetch, and convert *url* to plain text."""
    _validate_scheme(url)
    _check_ssrf(url)
    raw, content_type = _fetch(url)
    title, author, text = _to_plain_text(raw, content_type)
    return ExtractedDocument(
        kind="web_page",
        title=title or url,
        text=text,
        url=url,
        author=author,
    )


def _validate_scheme(url: str) -> None:
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in _ALLOWED_SCHEMES:
        raise ValueError(
            f"Unsupported URL scheme '{parsed.scheme}'. Only https:// and http:// are allowed."
        )


def _check_ssrf(url: str) -> None:
    """Resolve the hostname and block private/reserved IP ranges.

    Raises SsrfError if any resolved address is private, loopback,
    link-local, or otherwise reserved.
    """
    hostname = urllib.parse.urlparse(url).hostname
    if not hostname:
        raise ValueError(f"URL has no hostname: {url}")

    try:
        addrinfos = socket.getaddrinfo(hostname, None)
    except socket.gaierror as exc:
        raise ValueError(f"DNS resolution failed for '{hostname}': {exc}") from exc

    for addrinfo in addrinfos:
        try:
            ip = ipaddress.ip_address(addrinfo[4][0])
        except ValueError:
            continue
        if (
            ip.is_private
            or ip.is_loopback
            or ip.is_link_local
            or ip.is_reserved
            or ip.is_multicast
            or ip.is_unspecified
        ):
            raise SsrfError(
                f"URL resolves to private address ({ip}). "
                "Access to internal network addresses is not allowed."
            )


def _fetch(url: str) -> tuple[bytes, str]:
    """Fetch *url* with timeout, redirect limit, size cap, and Content-Type check.

    Returns (body_bytes, content_type_without_params).
    """
    request = urllib.request.Request(url, headers={"User-Agent": _USER_AGENT})
    opener = urllib.request.build_opener(_LimitedRedirectHandler(_MAX_REDIRECTS))

    try:
        response: HTTPResponse = opener.open(request, timeout=_TIMEOUT)
    except urllib.error.URLError as exc:
        raise RuntimeError(f"Failed to fetch URL '{url}': {exc}") from exc

    raw_ct = response.headers.get("Content-Type", "text/html")
    ct = raw_ct.split(";")[0].strip().lower()
    if ct not in _ALLOWED_CONTENT_TYPES:
        raise ValueError(
            f"Unsupported Content-Type '{ct}' for URL '{url}'. "
            f"Accepted: {', '.join(sorted(_ALLOWED_CONTENT_TYPES))}"
        )

    body = response.read(_MAX_BYTES + 1)
    if len(body) > _MAX_BYTES:
        raise ValueError(
            f"Response body exceeds {_MAX_BYTES // (1024 * 1024)} MB limit for URL '{url}'."
        )
    return body, ct


def _to_plain_text(body: bytes, content_type: str) -> tuple[str, str | None, str]:
    """Return (title, author, text) for a fetched body."""
    text = body.decode("utf-8", errors="replace")
    if content_type == "text/plain":
        return "", None, text

    soup = BeautifulSoup(text, "html.parser")
    title = soup.title.get_text(strip=True) if soup.title else ""
    author_tag = soup.find("meta", attrs={"name": "author"})
    author = author_tag.get("content") if author_tag else None
    for tag in soup.find_all(["script", "style", "nav", "footer", "head"]):
        tag.decompose()
    return title, author, _h2t.handle(str(soup)).strip()


class _LimitedRedirectHandler(urllib.request.HTTPRedirectHandler):
    """Raise an error after more than *max_redirects* redirects."""

    def __init__(self, max_redirects: int) -> None:
        self._max_redirects = max_redirects
        self._count = 0

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        self._count += 1
        if self._count > self._max_redirects:
            raise RuntimeError(
                f"Too many redirects (>{self._max_redirects}) for URL '{req.full_url}'."
            )
        # Redirect targets get the same SSRF check as the original URL.
        _check_ssrf(newurl)
        return super().redirect_request(req, fp, code, msg, headers, newurl)
