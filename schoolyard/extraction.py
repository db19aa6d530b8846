"""Extraction of school stubs, pagination and addresses from HTML.

The parse functions here never raise on odd markup. A page without a
schools table yields no links, a missing or garbled pager means a single
page, and a missing address yields the ``Address not found`` sentinel.
Storing the extracted values is the caller's job.
"""

from __future__ import annotations

import logging
import re
from urllib.parse import urljoin, urlparse, urlunparse

from lxml import etree
from lxml.html import HtmlElement, HTMLParser, document_fromstring

from schoolyard.data_types import (
    ADDRESS_NOT_FOUND,
    ListPage,
    PageKind,
    PageRequest,
    SchoolLink,
    SchoolStub,
)

logger = logging.getLogger(__name__)

SCHOOL_TABLE_XPATH = (
    "//table[.//tr[1]/th[contains(normalize-space(.), 'School')]"
    " or .//thead//th[contains(normalize-space(.), 'School')]]"
)
PAGINATION_SELECTOR = (
    "div.pagination a.page-numbers:not(.current):not(.next)"
)
PAGINATION_CONTAINER_SELECTOR = "div.pagination"
ADDRESS_XPATH = "//span[@itemprop='address']"

_PAGE_SUFFIX = re.compile(r"/page/\d+/?$")
_WHITESPACE = re.compile(r"\s+")


def _parse_document(html: str) -> HtmlElement | None:
    """Parse HTML into a document, or None when there is nothing to parse."""
    if not html or not html.strip():
        return None
    try:
        return document_fromstring(
            html.encode("utf-8"), parser=HTMLParser(encoding="utf-8")
        )
    except (etree.LxmlError, ValueError) as e:
        logger.debug(f"Unparseable HTML treated as empty: {e}")
        return None


def _text(element: HtmlElement) -> str:
    return _WHITESPACE.sub(" ", element.text_content()).strip()


def _find_school_table(doc: HtmlElement) -> HtmlElement | None:
    tables = doc.xpath(SCHOOL_TABLE_XPATH)
    return tables[0] if tables else None


def _body_rows(table: HtmlElement) -> list[HtmlElement]:
    rows = table.xpath("./tbody/tr")
    if not rows:
        rows = table.xpath(".//tr[td]")
    return rows


def _row_link(row: HtmlElement, base_url: str) -> SchoolLink | None:
    """Build the link for one table row, binding the row's own stub."""
    cells = row.xpath("./td")
    if not cells:
        return None
    hrefs = cells[0].xpath(".//a/@href")
    href = hrefs[0].strip() if hrefs else ""
    if not href or href.startswith(("#", "javascript:", "mailto:")):
        return None

    def cell(index: int) -> str:
        return _text(cells[index]) if index < len(cells) else ""

    return SchoolLink(
        url=urljoin(base_url, href),
        stub=SchoolStub(name=cell(0), division=cell(1), grade_span=cell(2)),
    )


def _total_pages(doc: HtmlElement) -> int:
    numbers: list[int] = []
    for anchor in doc.cssselect(PAGINATION_SELECTOR):
        label = _text(anchor).replace(",", "")
        try:
            numbers.append(int(label))
        except ValueError:
            continue
    return max([1, *numbers])


def parse_list_page(html: str, base_url: str) -> ListPage:
    """Parse a division LIST page.

    Args:
        html: Page HTML.
        base_url: URL the page was loaded from; relative links resolve
            against it.

    Returns:
        ListPage with row-bound school links and ``total_pages >= 1``.
    """
    doc = _parse_document(html)
    if doc is None:
        return ListPage()

    links: list[SchoolLink] = []
    table = _find_school_table(doc)
    if table is None:
        logger.debug(f"No schools table found at {base_url}")
    else:
        for row in _body_rows(table):
            link = _row_link(row, base_url)
            if link is not None:
                links.append(link)

    return ListPage(school_links=links, total_pages=_total_pages(doc))


def parse_detail_page(html: str) -> str:
    """Return the school's address, or the sentinel when absent or empty."""
    doc = _parse_document(html)
    if doc is None:
        return ADDRESS_NOT_FOUND
    for element in doc.xpath(ADDRESS_XPATH):
        address = _text(element)
        if address:
            return address
    return ADDRESS_NOT_FOUND


def detail_requests(
    list_page: ListPage, division_code: int
) -> list[PageRequest]:
    """DETAIL requests for every link, each carrying its own row's stub."""
    return [
        PageRequest(
            url=link.url,
            kind=PageKind.DETAIL,
            division_code=division_code,
            pending_school=link.stub,
        )
        for link in list_page.school_links
    ]


def list_page_url(url: str, page: int) -> str:
    """URL of the given LIST page, derived from any page of the division.

    A trailing ``/page/N`` segment is replaced; page 1 has no segment.
    """
    parsed = urlparse(url)
    path = _PAGE_SUFFIX.sub("", parsed.path).rstrip("/")
    if page > 1:
        path = f"{path}/page/{page}"
    return urlunparse(parsed._replace(path=path or "/"))


def next_list_request(
    request: PageRequest, total_pages: int
) -> PageRequest | None:
    """The LIST request following ``request``, or None on the last page."""
    if request.kind is not PageKind.LIST or request.page >= total_pages:
        return None
    return PageRequest(
        url=list_page_url(request.url, request.page + 1),
        kind=PageKind.LIST,
        division_code=request.division_code,
        page=request.page + 1,
    )


def extract_fingerprint_fragments(html: str) -> tuple[str, str]:
    """Serialized schools table and pager HTML; missing parts are ''."""
    doc = _parse_document(html)
    if doc is None:
        return "", ""

    table = _find_school_table(doc)
    table_html = (
        etree.tostring(
            table, encoding="unicode", method="html", with_tail=False
        )
        if table is not None
        else ""
    )
    pagers = doc.cssselect(PAGINATION_CONTAINER_SELECTOR)
    pager_html = (
        etree.tostring(
            pagers[0], encoding="unicode", method="html", with_tail=False
        )
        if pagers
        else ""
    )
    return table_html, pager_html
