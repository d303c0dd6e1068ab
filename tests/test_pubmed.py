"""PubMed client, XML parsing and article formatting."""
import datetime as dt

import httpx
import pytest
from tenacity import wait_none

from cvrecon.pubmed import (
    PubMedArticle,
    PubMedClient,
    PubMedError,
    article_to_entry,
    clean_title_for_search,
    format_authors,
    parse_articles,
    parse_pub_date,
    title_keywords,
)

EFETCH_XML = """<?xml version="1.0"?>
<PubmedArticleSet>
  <PubmedArticle>
    <MedlineCitation>
      <PMID Version="1">38000001</PMID>
      <Article>
        <Journal>
          <JournalIssue><PubDate><Year>2023</Year><Month>Nov</Month></PubDate></JournalIssue>
          <Title>Journal of the American College of Cardiology</Title>
        </Journal>
        <ArticleTitle>Outcomes of <i>transcatheter</i> valve replacement.</ArticleTitle>
        <Abstract><AbstractText>Background...</AbstractText></Abstract>
        <AuthorList>
          <Author><LastName>Roe</LastName><ForeName>Jane</ForeName></Author>
          <Author><LastName>Doe</LastName><ForeName>John</ForeName></Author>
          <Author><LastName>Smith</LastName><ForeName>A</ForeName></Author>
          <Author><LastName>Lee</LastName></Author>
          <Author><CollectiveName>TAVR Investigators</CollectiveName></Author>
        </AuthorList>
      </Article>
    </MedlineCitation>
    <PubmedData>
      <ArticleIdList>
        <ArticleId IdType="pubmed">38000001</ArticleId>
        <ArticleId IdType="doi">10.1016/j.jacc.2023.09.001</ArticleId>
      </ArticleIdList>
    </PubmedData>
  </PubmedArticle>
  <PubmedArticle>
    <MedlineCitation>
      <PMID Version="1">38000002</PMID>
      <Article>
        <Journal>
          <JournalIssue><PubDate><MedlineDate>2022 Winter</MedlineDate></PubDate></JournalIssue>
        </Journal>
        <ArticleTitle>Second article</ArticleTitle>
      </Article>
    </MedlineCitation>
  </PubmedArticle>
</PubmedArticleSet>
"""


def esearch_handler(ids, calls=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        if request.url.path.endswith("/esearch.fcgi"):
            return httpx.Response(200, json={"esearchresult": {"idlist": ids}})
        return httpx.Response(200, text=EFETCH_XML)

    return handler


def _client(handler) -> PubMedClient:
    return PubMedClient(
        base_url="https://eutils.test/entrez/eutils",
        api_key="",
        transport=httpx.MockTransport(handler),
        wait=wait_none(),
    )


def test_parse_articles():
    first, second = parse_articles(EFETCH_XML)

    assert first.pmid == "38000001"
    assert first.title == "Outcomes of transcatheter valve replacement."
    assert first.authors == ["Roe Jane", "Doe John", "Smith A", "Lee"]
    assert first.journal == "Journal of the American College of Cardiology"
    assert first.pub_date == "2023-Nov"
    assert first.doi == "10.1016/j.jacc.2023.09.001"
    assert first.abstract == "Background..."

    assert second.pub_date == "2022 Winter"
    assert second.journal == "Unknown Journal"
    assert second.doi is None


def test_parse_articles_rejects_garbage():
    with pytest.raises(PubMedError):
        parse_articles("<PubmedArticleSet><unclosed>")


def test_parse_articles_from_raw_efetch_bytes():
    document = (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<!DOCTYPE PubmedArticleSet PUBLIC "-//NLM//DTD PubMedArticle, 1st January 2024//EN" '
        '"https://dtd.nlm.nih.gov/ncbi/pubmed/out/pubmed_240101.dtd">\n'
        + EFETCH_XML.split("\n", 1)[1].replace("Roe", "Roé")
    ).encode("utf-8")

    first, second = parse_articles(document)

    assert first.authors[0] == "Roé Jane"
    assert second.title == "Second article"


def test_parse_articles_does_not_expand_entities():
    document = b"""<?xml version="1.0"?>
<!DOCTYPE PubmedArticleSet [<!ENTITY secret SYSTEM "file:///etc/passwd">]>
<PubmedArticleSet>
  <PubmedArticle>
    <MedlineCitation><PMID>1</PMID><Article><ArticleTitle>A &secret; title</ArticleTitle></Article></MedlineCitation>
  </PubmedArticle>
</PubmedArticleSet>"""

    articles = parse_articles(document)

    assert "root:" not in articles[0].title


@pytest.mark.parametrize(
    "value, expected",
    [
        ("2023-Nov", dt.date(2023, 11, 1)),
        ("2021-03", dt.date(2021, 3, 1)),
        ("2022 Winter", dt.date(2022, 1, 1)),
        ("2019", dt.date(2019, 1, 1)),
        ("Unknown", None),
        ("", None),
    ],
)
def test_parse_pub_date(value, expected):
    assert parse_pub_date(value) == expected


def test_format_authors_truncates():
    assert format_authors(["A", "B", "C"]) == "A, B, C"
    assert format_authors(["A", "B", "C", "D"]) == "A, B, C, et al."


def test_article_to_entry():
    article = PubMedArticle(
        pmid="1",
        title="A trial",
        authors=["Roe Jane"],
        journal="NEJM",
        pub_date="2020-Jan",
        doi="10.1056/x",
    )
    candidate = article_to_entry(article)
    assert candidate.description == "Roe Jane. NEJM. 2020-Jan. DOI: 10.1056/x"
    assert candidate.date == dt.date(2020, 1, 1)
    assert candidate.url == "https://pubmed.ncbi.nlm.nih.gov/1/"
    assert candidate.source_data == {"pmid": "1", "doi": "10.1056/x"}


async def test_articles_by_author():
    calls = []
    articles = await _client(esearch_handler(["38000001", "38000002"], calls)).articles_by_author("Roe J")

    assert [a.pmid for a in articles] == ["38000001", "38000002"]
    search, fetch = calls
    assert search.url.params["term"] == "Roe J[Author]"
    assert search.url.params["retmode"] == "json"
    assert "api_key" not in search.url.params
    assert fetch.url.params["id"] == "38000001,38000002"


async def test_no_ids_skips_fetch():
    calls = []
    assert await _client(esearch_handler([], calls)).articles_by_author("Nobody") == []
    assert len(calls) == 1


async def test_throttling_is_retried():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(429)
        return httpx.Response(200, json={"esearchresult": {"idlist": ["1"]}})

    assert await _client(handler).search_author("Roe J") == ["1"]
    assert len(calls) == 2


async def test_persistent_failure_raises():
    with pytest.raises(PubMedError):
        await _client(lambda request: httpx.Response(503)).search_author("Roe J")
    with pytest.raises(PubMedError):
        await _client(lambda request: httpx.Response(400)).fetch_articles(["1"])


def test_clean_title_for_search():
    assert clean_title_for_search("The 25th “Heart” team – outcomes") == "25 Heart team outcomes"
    assert clean_title_for_search("Valve trial: a randomized comparison of two devices") == "Valve trial"
    assert title_keywords("The Outcomes of TAVR in the elderly using registry data") == "outcomes tavr elderly registry data"


async def test_articles_by_title_searches_title_field():
    calls = []
    articles = await _client(esearch_handler(["38000001"], calls)).articles_by_title("Outcomes of TAVR")

    assert [a.pmid for a in articles] == ["38000001", "38000002"]
    search, _ = calls
    assert search.url.params["term"] == "Outcomes of TAVR[Title]"
    assert search.url.params["retmax"] == "5"


async def test_articles_by_title_falls_back_to_keywords():
    calls = []

    def handler(request):
        calls.append(request.url.params.get("term"))
        if request.url.path.endswith("/esearch.fcgi"):
            found = [] if request.url.params["term"].endswith("[Title]") else ["38000002"]
            return httpx.Response(200, json={"esearchresult": {"idlist": found}})
        return httpx.Response(200, text=EFETCH_XML)

    articles = await _client(handler).articles_by_title("Second article, revisited")

    assert calls[:2] == ["Second article, revisited[Title]", '"second article revisited"']
    assert len(articles) == 2
