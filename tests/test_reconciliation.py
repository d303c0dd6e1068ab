"""Reconciliation engine: create, skip, augment and order."""
import datetime as dt

from sqlalchemy import func, select

from ai.extraction import ExtractedCategory
from cvrecon import models, store
from cvrecon.pipelines.reconciliation import EntryCandidate, Outcome, ReconciliationEngine, Target


def _categories(*categories) -> list[ExtractedCategory]:
    return [
        ExtractedCategory.model_validate({"name": name, "entries": list(entries)})
        for name, entries in categories
    ]


EDUCATION = ("Education", [{"title": "MD, Harvard Medical School", "date": "2001 - 2005"}])
AWARDS = (
    "Awards",
    [
        {"title": "Young Investigator Award", "description": "American Heart Association, 2012"},
        {"title": "Best Poster", "date": "March 2010"},
    ],
)


async def _count(session, model) -> int:
    return await session.scalar(select(func.count()).select_from(model))


async def test_first_run_creates_categories_and_entries(session, user_id):
    engine = ReconciliationEngine(session, user_id)
    summary = await engine.reconcile_categories(_categories(EDUCATION, AWARDS), source_data={"chunk_index": 0})
    await session.commit()

    assert summary.entries_created == 3
    assert summary.categories_processed == 2
    assert summary.duplicates_skipped == 0

    cv = await store.get_cv(session, user_id)
    entries = await store.list_entries(session, cv.id)
    assert [e.title for e in entries] == ["MD, Harvard Medical School", "Young Investigator Award", "Best Poster"]
    assert [e.date for e in entries] == [dt.date(2001, 1, 1), dt.date(2012, 1, 1), dt.date(2010, 1, 1)]
    assert entries[0].source_type == "cv-import"
    assert entries[0].source_data["chunk_index"] == 0
    assert "imported_at" in entries[0].source_data

    education = await store.find_category_by_name(session, cv.id, "education")
    awards = await store.find_category_by_name(session, cv.id, "AWARDS")
    assert (education.display_order, awards.display_order) == (0, 1)
    assert [e.display_order for e in entries[1:]] == [0, 1]


async def test_rerun_is_idempotent(session, user_id):
    first = ReconciliationEngine(session, user_id)
    await first.reconcile_categories(_categories(EDUCATION, AWARDS))
    await session.commit()

    second = ReconciliationEngine(session, user_id)
    summary = await second.reconcile_categories(_categories(EDUCATION, AWARDS))
    await session.commit()

    assert summary.entries_created == 0
    assert summary.duplicates_skipped == 3
    assert await _count(session, models.Entry) == 3
    assert await _count(session, models.Category) == 2


async def test_repeated_title_within_run_collapses(session, user_id):
    engine = ReconciliationEngine(session, user_id)
    first_chunk = _categories(("Publications", [{"title": "Outcomes of TAVR in the elderly"}]))
    second_chunk = _categories(("Presentations", [{"title": "outcomes of TAVR in the Elderly."}]))

    a = await engine.reconcile_categories(first_chunk)
    await session.commit()
    engine.after_commit()
    b = await engine.reconcile_categories(second_chunk)
    await session.commit()

    assert (a.entries_created, b.entries_created, b.duplicates_skipped) == (1, 0, 1)
    assert await _count(session, models.Entry) == 1


async def test_undated_entry_gets_date_when_augmenting(session, user_id):
    seed = ReconciliationEngine(session, user_id)
    await seed.reconcile_categories(_categories(("Awards", [{"title": "Teaching Excellence Award"}])))
    await session.commit()

    engine = ReconciliationEngine(session, user_id, augment_dates=True)
    summary = await engine.reconcile_categories(
        _categories(("Awards", [{"title": "Teaching Excellence Award", "date": "2019", "location": "Boston"}]))
    )
    await session.commit()

    assert summary.entries_updated == 1
    assert summary.entries_created == 0
    entry = (await session.execute(select(models.Entry))).scalar_one()
    assert entry.date == dt.date(2019, 1, 1)
    assert entry.location == "Boston"


async def test_entry_from_earlier_chunk_gets_date_from_later_chunk(session, user_id):
    engine = ReconciliationEngine(session, user_id, augment_dates=True)
    first = await engine.reconcile_categories(_categories(("Awards", [{"title": "Teaching Excellence Award"}])))
    await session.commit()
    engine.after_commit()

    second = await engine.reconcile_categories(
        _categories(("Awards", [{"title": "Teaching Excellence Award", "date": "2019"}]))
    )
    third = await engine.reconcile_categories(
        _categories(("Awards", [{"title": "Teaching Excellence Award", "date": "2020"}]))
    )
    await session.commit()

    assert (first.entries_created, second.entries_updated, third.duplicates_skipped) == (1, 1, 1)
    entry = (await session.execute(select(models.Entry))).scalar_one()
    assert entry.date == dt.date(2019, 1, 1)


async def test_reset_reloads_snapshot_after_rollback(session, user_id):
    engine = ReconciliationEngine(session, user_id)
    await engine.reconcile_categories(_categories(("Awards", [{"title": "Teaching Award"}])))
    await session.rollback()
    engine.reset()

    summary = await engine.reconcile_categories(_categories(("Awards", [{"title": "Teaching Award"}])))
    await session.commit()

    assert summary.entries_created == 1
    assert await _count(session, models.Entry) == 1


async def test_dated_entry_is_not_overwritten(session, user_id):
    seed = ReconciliationEngine(session, user_id)
    await seed.reconcile_categories(_categories(("Awards", [{"title": "Teaching Award", "date": "2015"}])))
    await session.commit()

    engine = ReconciliationEngine(session, user_id, augment_dates=True)
    summary = await engine.reconcile_categories(_categories(("Awards", [{"title": "Teaching Award", "date": "2019"}])))

    assert summary.duplicates_skipped == 1
    entry = (await session.execute(select(models.Entry))).scalar_one()
    assert entry.date == dt.date(2015, 1, 1)


async def test_without_augmentation_duplicate_is_skipped(session, user_id):
    seed = ReconciliationEngine(session, user_id)
    await seed.reconcile_categories(_categories(("Awards", [{"title": "Teaching Award"}])))
    await session.commit()

    engine = ReconciliationEngine(session, user_id)
    summary = await engine.reconcile_categories(_categories(("Awards", [{"title": "Teaching Award", "date": "2019"}])))

    assert summary.duplicates_skipped == 1
    entry = (await session.execute(select(models.Entry))).scalar_one()
    assert entry.date is None


async def test_new_entries_append_to_existing_category(session, user_id):
    seed = ReconciliationEngine(session, user_id)
    await seed.reconcile_categories(_categories(AWARDS))
    await session.commit()

    engine = ReconciliationEngine(session, user_id)
    await engine.reconcile_categories(_categories(("awards", [{"title": "Fellow of the ACC"}])))
    await session.commit()

    cv = await store.get_cv(session, user_id)
    entries = await store.list_entries(session, cv.id)
    assert [(e.title, e.display_order) for e in entries] == [
        ("Young Investigator Award", 0),
        ("Best Poster", 1),
        ("Fellow of the ACC", 2),
    ]
    assert await _count(session, models.Category) == 1


async def test_pending_target_stages_and_respects_canonical(session, user_id):
    seed = ReconciliationEngine(session, user_id)
    await seed.reconcile_categories(_categories(("Awards", [{"title": "Teaching Award"}])))
    await session.commit()

    engine = ReconciliationEngine(session, user_id, target=Target.PENDING, source_type=models.SourceType.EMAIL)
    summary = await engine.reconcile_candidates(
        [
            ("Awards", EntryCandidate(title="Teaching Award")),
            ("Grants", EntryCandidate(title="R01 renewal", ai_confidence=0.9, source_data={"message_id": "m1"})),
            ("Grants", EntryCandidate(title="R01 Renewal")),
        ],
        source_data={"from": "office@example.org"},
    )
    await session.commit()

    assert (summary.entries_created, summary.duplicates_skipped) == (1, 2)
    pending = await store.list_pending(session, user_id)
    assert len(pending) == 1
    assert pending[0].suggested_category == "Grants"
    assert pending[0].source_type == "email"
    assert pending[0].source_data["from"] == "office@example.org"
    assert pending[0].source_data["message_id"] == "m1"
    assert await _count(session, models.Entry) == 1


async def test_pending_titles_block_canonical_duplicates(session, user_id):
    await store.create_pending(session, user_id, title="Keynote, ESC Congress", suggested_category="Presentations")
    await session.commit()

    engine = ReconciliationEngine(session, user_id)
    outcome, record_id = await engine.reconcile_entry("Presentations", EntryCandidate(title="Keynote ESC Congress"))

    assert (outcome, record_id) == (Outcome.SKIPPED, None)


async def test_unusable_title_is_invalid(session, user_id):
    engine = ReconciliationEngine(session, user_id)
    outcome, _ = await engine.reconcile_entry("Awards", EntryCandidate(title="!!!"))
    assert outcome is Outcome.INVALID


async def test_other_users_entries_are_not_duplicates(session, make_user):
    alice = await make_user()
    bob = await make_user()
    await ReconciliationEngine(session, alice).reconcile_categories(_categories(EDUCATION))
    await session.commit()

    summary = await ReconciliationEngine(session, bob).reconcile_categories(_categories(EDUCATION))
    await session.commit()

    assert summary.entries_created == 1
