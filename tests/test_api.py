"""HTTP surface: identity, error mapping and endpoint wiring."""
import httpx
import pytest

from ai.extraction import ExtractionClient
from cvrecon import api, store
from cvrecon.config import settings
from cvrecon.db import get_session
from cvrecon.pubmed import PubMedArticle
from conftest import FakeCompletion, cv_payload


class FakePubMed:
    def __init__(self, articles):
        self.articles = articles

    async def articles_by_author(self, author):
        return list(self.articles)

    async def articles_by_title(self, title, max_results=None):
        return list(self.articles)


@pytest.fixture
def completion():
    return FakeCompletion(
        cv_payload(
            ("Education", [{"title": "MD, Harvard Medical School", "date": "2001 - 2005"}]),
            ("Awards", [{"title": "Teaching Award"}]),
        )
    )


@pytest.fixture
async def client(session_factory, completion):
    async def override_session():
        async with session_factory() as session:
            yield session

    api.app.dependency_overrides[get_session] = override_session
    api.app.dependency_overrides[api.get_extraction_client] = lambda: ExtractionClient(complete=completion)
    api.app.dependency_overrides[api.get_pubmed_client] = lambda: FakePubMed(
        [PubMedArticle(pmid="77", title="Heart team decisions", journal="EHJ", pub_date="2020")]
    )
    transport = httpx.ASGITransport(app=api.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    api.app.dependency_overrides.clear()


def _auth(user_id: int) -> dict:
    return {"X-User-Id": str(user_id)}


def _upload(text: str = "Education\nMD, Harvard Medical School, 2001-2005\n\nAwards\nTeaching Award"):
    return {"file": ("cv.txt", text.encode(), "text/plain")}


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


async def test_identity_is_required(client):
    assert (await client.get("/user/balance")).status_code == 401
    assert (await client.get("/user/balance", headers=_auth(404))).status_code == 404


async def test_balance(client, make_user):
    user_id = await make_user(balance=0.25)
    response = await client.get("/user/balance", headers=_auth(user_id))
    assert response.json() == {"balance_usd": 0.25, "needs_reload": True}


async def test_sync_document_import(client, user_id, session):
    response = await client.post("/import/document", files=_upload(), headers=_auth(user_id))

    assert response.status_code == 200
    body = response.json()
    assert body["entries_created"] == 2
    assert body["chunks_processed"] == 1
    assert body["categories_found"] == 2
    assert body["stopped_reason"] is None

    cv = await store.get_cv(session, user_id)
    assert [e.title for e in await store.list_entries(session, cv.id)] == ["MD, Harvard Medical School", "Teaching Award"]


async def test_unsupported_upload(client, user_id):
    response = await client.post(
        "/import/document",
        files={"file": ("cv.docx", b"PK\x03\x04", "application/msword")},
        headers=_auth(user_id),
    )
    assert response.status_code == 400
    assert response.json()["error"] == "parse_error"


async def test_insufficient_credits_is_402(client, make_user, completion):
    user_id = await make_user(balance=0.0)

    response = await client.post("/import/document", files=_upload(), params={"mode": "async"}, headers=_auth(user_id))

    assert response.status_code == 402
    body = response.json()
    assert body["error"] == "insufficient_credits"
    assert body["needs_credits"] is True
    assert body["current_balance"] == 0.0
    assert completion.calls == []


async def test_async_import_and_cancel(client, user_id):
    response = await client.post("/import/document", files=_upload(), params={"mode": "async"}, headers=_auth(user_id))
    assert response.status_code == 202
    task_id = response.json()["task_id"]
    assert response.json()["status"] == "queued"

    status = await client.get(f"/import/tasks/{task_id}", headers=_auth(user_id))
    assert status.json()["state"] == "waiting"
    assert status.json()["is_finished"] is False

    cancelled = await client.delete(f"/import/tasks/{task_id}", headers=_auth(user_id))
    assert cancelled.status_code == 200
    assert (cancelled.json()["state"], cancelled.json()["failure_reason"]) == ("failed", "cancelled")

    again = await client.delete(f"/import/tasks/{task_id}", headers=_auth(user_id))
    assert again.status_code == 400


async def test_task_of_other_user_is_hidden(client, make_user):
    owner = await make_user()
    other = await make_user()
    response = await client.post("/import/document", files=_upload(), params={"mode": "async"}, headers=_auth(owner))
    task_id = response.json()["task_id"]

    assert (await client.get(f"/import/tasks/{task_id}", headers=_auth(other))).status_code == 404


async def test_chunk_import(client, user_id):
    response = await client.post(
        "/import/chunk",
        json={"text": "Awards\nTeaching Award", "chunk_index": 0, "total_chunks": 2, "is_first_chunk": True},
        headers=_auth(user_id),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["entries_created"] == 2
    assert body["is_complete"] is False
    assert body["balance_remaining"] is not None

    invalid = await client.post(
        "/import/chunk",
        json={"text": "x", "chunk_index": 2, "total_chunks": 2},
        headers=_auth(user_id),
    )
    assert invalid.status_code == 422


async def test_review_flow(client, make_user, completion, session):
    user_id = await make_user()
    other = await make_user()
    completion.responses = [
        {
            "entries": [
                {"title": "Invited lecture, Grand Rounds", "suggested_category": "Presentations"},
                {"title": "Visiting professorship", "suggested_category": "Teaching"},
                {"title": "Newsletter"},
            ]
        }
    ]

    response = await client.post(
        "/import/email",
        json={"sender": "chair@example.org", "subject": "Invitation", "text_body": "Dear Dr. Roe, ..."},
        headers=_auth(user_id),
    )
    assert response.json()["entries_created"] == 3

    pending = (await client.get("/pending", headers=_auth(user_id))).json()
    assert pending["count"] == 3
    ids = {entry["title"]: entry["id"] for entry in pending["entries"]}
    assert (await client.get("/pending", headers=_auth(other))).json()["count"] == 0

    rejected = await client.delete(f"/pending/{ids['Newsletter']}", headers=_auth(user_id))
    assert rejected.status_code == 204

    # Category must belong to the reviewer
    other_cv = await store.get_or_create_cv(session, other)
    foreign_category = await store.create_category(session, other_cv.id, "Teaching")
    await session.commit()
    foreign = await client.post(
        f"/pending/{ids['Visiting professorship']}/approve",
        json={"category_id": foreign_category.id},
        headers=_auth(user_id),
    )
    assert foreign.status_code == 404

    approved = await client.post("/pending/approve-all", headers=_auth(user_id))
    assert approved.json() == {"approved": 2, "failed": 0, "total": 2, "errors": []}
    assert (await client.get("/pending", headers=_auth(user_id))).json()["count"] == 0


async def test_approve_single(client, user_id, session):
    cv = await store.get_or_create_cv(session, user_id)
    category = await store.create_category(session, cv.id, "Presentations")
    pending = await store.create_pending(session, user_id, title="Keynote", suggested_category="Talks")
    await session.commit()

    response = await client.post(
        f"/pending/{pending.id}/approve",
        json={"category_id": category.id},
        headers=_auth(user_id),
    )

    assert response.status_code == 201
    assert response.json()["category_id"] == category.id
    assert response.json()["title"] == "Keynote"


async def test_duplicates_and_missing_dates(client, user_id, session):
    cv = await store.get_or_create_cv(session, user_id)
    category = await store.create_category(session, cv.id, "Publications")
    keep = await store.create_entry(
        session, category_id=category.id, title="TAVR outcomes", display_order=0, source_data={"pmid": "5"}
    )
    drop = await store.create_entry(session, category_id=category.id, title="TAVR Outcomes.", display_order=1)
    await store.create_entry(
        session, category_id=category.id, title="Registry paper", description="Circulation 2017", display_order=2
    )
    await session.commit()
    headers = _auth(user_id)

    scan = (await client.get("/cv/duplicates", headers=headers)).json()
    assert scan["duplicate_count"] == 1
    assert scan["groups"][0]["keep_id"] == keep.id
    assert scan["groups"][0]["delete_ids"] == [drop.id]

    assert (await client.post("/cv/duplicates/delete", json={"entry_ids": []}, headers=headers)).status_code == 400
    deleted = await client.post("/cv/duplicates/delete", json={"entry_ids": [drop.id]}, headers=headers)
    assert deleted.json() == {"deleted_count": 1}

    missing = (await client.get("/cv/missing-dates", headers=headers)).json()
    assert missing["count"] == 2

    fixed = (await client.post("/cv/missing-dates/fix", headers=headers)).json()
    assert (fixed["fixed"], fixed["still_missing"]) == (1, 1)

    manual = await client.post(f"/cv/missing-dates/{keep.id}", json={"date": "2019-05-01"}, headers=headers)
    assert manual.json()["date"] == "2019-05-01"
    assert (await client.get("/cv/missing-dates", headers=headers)).json()["count"] == 0

    other_entry = await client.post("/cv/missing-dates/999", json={"date": "2019-05-01"}, headers=headers)
    assert other_entry.status_code == 404


async def test_pubmed_preview_and_import(client, user_id):
    preview = (await client.get("/import/pubmed", params={"author": "Roe J"}, headers=_auth(user_id))).json()
    assert preview["total_found"] == 1
    assert preview["new_count"] == 1
    assert preview["articles"][0]["url"] == "https://pubmed.ncbi.nlm.nih.gov/77/"

    imported = (await client.post("/import/pubmed", json={"author": "Roe J"}, headers=_auth(user_id))).json()
    assert imported == {"imported": 1, "skipped": 0}

    preview = (await client.get("/import/pubmed", params={"author": "Roe J"}, headers=_auth(user_id))).json()
    assert preview["new_count"] == 0


async def test_pmid_enrichment(client, user_id, session):
    cv = await store.get_or_create_cv(session, user_id)
    category = await store.create_category(session, cv.id, "Publications")
    heart_team = await store.create_entry(session, category_id=category.id, title="Heart team decisions", display_order=0)
    outcomes = await store.create_entry(session, category_id=category.id, title="Outcomes of TAVR", display_order=1)
    await session.commit()
    headers = _auth(user_id)

    listed = (await client.get("/cv/enrich-pmid", headers=headers)).json()
    assert [e["id"] for e in listed["entries"]] == [heart_team.id, outcomes.id]
    assert (listed["total_publications"], listed["with_pmid"], listed["without_pmid"]) == (2, 0, 2)

    found = (await client.get("/cv/enrich-pmid/search", params={"title": "Heart team"}, headers=headers)).json()
    assert [a["pmid"] for a in found["articles"]] == ["77"]

    enriched = (await client.post("/cv/enrich-pmid/auto", headers=headers)).json()
    assert (enriched["checked"], enriched["enriched"], enriched["lookup_failed"]) == (2, 1, 0)
    assert enriched["updates"][0]["id"] == heart_team.id

    rejected = await client.post("/cv/enrich-pmid", json={"entry_id": outcomes.id, "pmid": "abc"}, headers=headers)
    assert rejected.status_code == 400
    manual = await client.post("/cv/enrich-pmid", json={"entry_id": outcomes.id, "pmid": "5"}, headers=headers)
    assert manual.status_code == 200
    assert manual.json()["source_type"] == "pubmed"

    assert (await client.get("/cv/enrich-pmid", headers=headers)).json()["without_pmid"] == 0


async def test_pubmed_settings(client, user_id):
    headers = _auth(user_id)
    assert (await client.get("/settings/pubmed", headers=headers)).json() == {
        "enabled": False,
        "author_name": None,
        "frequency": "weekly",
        "last_checked_at": None,
    }

    missing_author = await client.put("/settings/pubmed", json={"enabled": True}, headers=headers)
    assert missing_author.status_code == 400

    saved = await client.put(
        "/settings/pubmed", json={"enabled": True, "author_name": "Roe J", "frequency": "daily"}, headers=headers
    )
    assert saved.status_code == 200
    assert (await client.get("/settings/pubmed", headers=headers)).json()["frequency"] == "daily"


async def test_cron_pubmed_requires_secret(client, user_id, monkeypatch):
    await client.put("/settings/pubmed", json={"enabled": True, "author_name": "Roe J"}, headers=_auth(user_id))

    assert (await client.post("/cron/pubmed")).status_code == 401
    monkeypatch.setattr(settings.pubmed, "cron_secret", "s3cret")
    assert (await client.post("/cron/pubmed", headers={"X-Cron-Secret": "wrong"})).status_code == 401

    response = await client.post("/cron/pubmed", headers={"X-Cron-Secret": "s3cret"})

    assert response.status_code == 200
    body = response.json()
    assert body["processed"] == 1
    assert (body["results"][0]["user_id"], body["results"][0]["status"]) == (user_id, "success")
    assert body["results"][0]["imported"] == 1

    again = await client.post("/cron/pubmed", headers={"X-Cron-Secret": "s3cret"})
    assert again.json()["processed"] == 0
