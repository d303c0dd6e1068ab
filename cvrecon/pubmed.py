"""PubMed client (NCBI E-utilities) for bibliographic imports.

`esearch` (JSON) finds PMIDs for an author or a title, `efetch` (XML, parsed
with lxml) returns the article records. NCBI answers bursts with 429/503;
those and transport errors are retried with exponential backoff (2s, 4s, 8s).
"""
from __future__ import annotations

import datetime as dt
import logging
import re
from dataclasses import dataclass, field

import httpx
from lxml import etree
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from cvrecon.config import settings
from cvrecon.pipelines.dates import MONTHS, MAX_YEAR, MIN_YEAR
from cvrecon.pipelines.reconciliation import EntryCandidate

logger = logging.getLogger(__name__)

PUBMED_ARTICLE_URL = "https://pubmed.ncbi.nlm.nih.gov/{pmid}/"
MAX_LISTED_AUTHORS = 3
_RETRY_STATUSES = {429, 503}

_STOP_WORDS = frozenset(
    "the a an of in for on to with and or at by from as is are was were using based".split()
)
_QUOTES = re.compile(r"[\"'\u2018\u2019\u201c\u201d]")
_DASHES = re.compile(r"[-\u2013\u2014]")
_ORDINAL = re.compile(r"(\d+)(st|nd|rd|th)\b", re.IGNORECASE)
_SUBTITLE = re.compile(r":\s*.{20,}$")
_LEADING_ARTICLE = re.compile(r"^(the|a|an)\s+", re.IGNORECASE)


class PubMedError(Exception):
    """Raised when PubMed cannot be queried or returns garbage."""
    pass


class PubMedThrottled(PubMedError):
    """429/503 from NCBI."""
    pass


@dataclass
class PubMedArticle:
    """Article metadata from efetch."""
    pmid: str
    title: str
    authors: list[str] = field(default_factory=list)
    journal: str = "Unknown Journal"
    pub_date: str = "Unknown"
    doi: str | None = None
    abstract: str | None = None


def _xml_parser() -> etree.XMLParser:
    # efetch documents carry a DOCTYPE; never fetch or expand it
    return etree.XMLParser(resolve_entities=False, no_network=True, load_dtd=False, huge_tree=False)


def _text(element: etree._Element | None) -> str | None:
    if element is None:
        return None
    text = "".join(element.itertext()).strip()
    return text or None


def parse_articles(xml: bytes | str) -> list[PubMedArticle]:
    """Parse an efetch PubmedArticleSet document.

    Raises:
        PubMedError: If the document is not valid XML
    """
    if isinstance(xml, str):
        xml = xml.encode("utf-8")
    try:
        root = etree.fromstring(xml, parser=_xml_parser())
    except etree.XMLSyntaxError as e:
        raise PubMedError(f"Invalid efetch XML: {e}") from e

    articles = []
    for node in root.iter("PubmedArticle"):
        pmid = _text(node.find("MedlineCitation/PMID"))
        if not pmid:
            continue
        article = node.find("MedlineCitation/Article")
        if article is None:
            continue

        authors = []
        for author in article.findall("AuthorList/Author"):
            last_name = _text(author.find("LastName"))
            if not last_name:
                continue
            fore_name = _text(author.find("ForeName")) or ""
            authors.append(f"{last_name} {fore_name}".strip())

        year = _text(article.find("Journal/JournalIssue/PubDate/Year"))
        month = _text(article.find("Journal/JournalIssue/PubDate/Month"))
        if year:
            pub_date = f"{year}-{month}" if month else year
        else:
            pub_date = _text(article.find("Journal/JournalIssue/PubDate/MedlineDate")) or "Unknown"

        doi = None
        for article_id in node.findall("PubmedData/ArticleIdList/ArticleId"):
            if article_id.get("IdType") == "doi":
                doi = _text(article_id)
                break

        articles.append(
            PubMedArticle(
                pmid=pmid,
                title=_text(article.find("ArticleTitle")) or "Unknown Title",
                authors=authors,
                journal=_text(article.find("Journal/Title")) or "Unknown Journal",
                pub_date=pub_date,
                doi=doi,
                abstract=_text(article.find("Abstract/AbstractText")),
            )
        )
    return articles


def parse_pub_date(pub_date: str | None) -> dt.date | None:
    """'2024', '2024-Jan' or '2024-03' -> first day of that month."""
    if not pub_date or pub_date == "Unknown":
        return None
    parts = pub_date.replace(" ", "-").split("-")
    try:
        year = int(parts[0][:4])
    except ValueError:
        return None
    if not MIN_YEAR <= year <= MAX_YEAR:
        return None

    month = 1
    if len(parts) > 1 and parts[1]:
        token = parts[1]
        if token.isdigit() and 1 <= int(token) <= 12:
            month = int(token)
        else:
            month = MONTHS.get(token[:3].lower(), 1)
    return dt.date(year, month, 1)


def format_authors(authors: list[str]) -> str:
    if len(authors) > MAX_LISTED_AUTHORS:
        return ", ".join(authors[:MAX_LISTED_AUTHORS]) + ", et al."
    return ", ".join(authors)


def clean_title_for_search(title: str) -> str:
    """Strip what breaks an esearch [Title] query: subtitles, quotes, dashes, ordinals."""
    title = _SUBTITLE.sub("", title)
    title = _QUOTES.sub("", title)
    title = _DASHES.sub(" ", title)
    title = _ORDINAL.sub(r"\1", title)
    title = _LEADING_ARTICLE.sub("", title.strip())
    return " ".join(title.split())


def title_keywords(title: str, count: int = 5) -> str:
    words = re.sub(r"[^a-z0-9\s]", " ", title.lower()).split()
    return " ".join([word for word in words if len(word) > 2 and word not in _STOP_WORDS][:count])


def article_to_entry(article: PubMedArticle) -> EntryCandidate:
    """Build a reconciliation candidate from an article."""
    description = f"{format_authors(article.authors)}. {article.journal}. {article.pub_date}."
    if article.doi:
        description += f" DOI: {article.doi}"
    return EntryCandidate(
        title=article.title,
        description=description,
        date=parse_pub_date(article.pub_date),
        url=PUBMED_ARTICLE_URL.format(pmid=article.pmid),
        source_data={"pmid": article.pmid, "doi": article.doi},
    )


class PubMedClient:
    """Thin async wrapper over esearch/efetch."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        wait: wait_base | None = None,
    ) -> None:
        cfg = settings.pubmed
        self.base_url = base_url or cfg.base_url
        self.api_key = api_key if api_key is not None else cfg.api_key
        self.timeout_seconds = timeout_seconds or cfg.timeout_seconds
        self._transport = transport
        self._wait = wait or wait_exponential(multiplier=1, min=2, max=8)

    def _params(self, **params) -> dict:
        if self.api_key:
            params["api_key"] = self.api_key
        return params

    async def _get(self, path: str, params: dict) -> httpx.Response:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            transport=self._transport,
        ) as client:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(3),
                wait=self._wait,
                retry=retry_if_exception_type((PubMedThrottled, httpx.TransportError)),
                reraise=True,
            ):
                with attempt:
                    response = await client.get(path, params=params)
                    if response.status_code in _RETRY_STATUSES:
                        logger.warning(f"PubMed {path} throttled ({response.status_code})")
                        raise PubMedThrottled(f"PubMed returned {response.status_code}")
                    if response.status_code >= 400:
                        raise PubMedError(f"PubMed {path} failed with {response.status_code}")
                    return response
        raise PubMedError("PubMed retries exhausted")  # pragma: no cover

    async def search(self, term: str, max_results: int | None = None) -> list[str]:
        """PMIDs for an E-utilities query term."""
        params = self._params(
            db="pubmed",
            term=term,
            retmax=max_results or settings.pubmed.max_results,
            retmode="json",
        )
        try:
            response = await self._get("/esearch.fcgi", params)
            ids = response.json().get("esearchresult", {}).get("idlist", [])
        except httpx.HTTPError as e:
            raise PubMedError(f"PubMed search failed: {e}") from e
        except ValueError as e:
            raise PubMedError(f"Invalid esearch response: {e}") from e
        logger.info(f"PubMed search for '{term}' returned {len(ids)} ids")
        return [str(pmid) for pmid in ids]

    async def search_author(self, author: str, max_results: int | None = None) -> list[str]:
        """PMIDs for an author name."""
        return await self.search(f"{author.strip()}[Author]", max_results)

    async def fetch_articles(self, pmids: list[str]) -> list[PubMedArticle]:
        if not pmids:
            return []
        params = self._params(db="pubmed", id=",".join(pmids), retmode="xml")
        try:
            response = await self._get("/efetch.fcgi", params)
        except httpx.HTTPError as e:
            raise PubMedError(f"PubMed fetch failed: {e}") from e
        return parse_articles(response.content)

    async def articles_by_author(self, author: str) -> list[PubMedArticle]:
        return await self.fetch_articles(await self.search_author(author))

    async def articles_by_title(self, title: str, max_results: int | None = None) -> list[PubMedArticle]:
        """Best matches for a publication title, most relevant first.

        The cleaned title is searched in the [Title] field first; when that
        finds nothing, its leading keywords are searched as a phrase.
        """
        max_results = max_results or settings.pubmed.title_search_results
        pmids = []
        cleaned = clean_title_for_search(title)
        if cleaned:
            pmids = await self.search(f"{cleaned}[Title]", max_results)
        keywords = title_keywords(title)
        if not pmids and keywords:
            pmids = await self.search(f'"{keywords}"', max_results)
        return await self.fetch_articles(pmids)
