"""Tests for the persistence gateway."""

import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import inspect
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from tracker.models import Chapter, Title
from tracker.repository import Repository
from tracker.sources.base import FetchedChapter


def _chapters(*numbers):
    return [FetchedChapter(float(n), f"Chapter {n}") for n in numbers]


def test_init_db_creates_schema(engine):
    table_names = set(inspect(engine).get_table_names())
    assert {"titles", "chapters", "subscriptions", "jobs", "pipeline_events"} <= table_names


def test_save_new_chapters_records_rows_and_bookkeeping(session, make_title):
    title_id = make_title(watermark=10.0)
    repo = Repository(session)
    checked_at = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)

    result = repo.save_new_chapters(title_id, _chapters(11, 12), 12.0, checked_at=checked_at)

    assert result.status == "ok"
    assert [c.number for c in result.inserted] == [11.0, 12.0]
    assert repo.get_watermark(title_id) == 12.0
    title = repo.get_title(title_id)
    session.refresh(title)
    assert title.last_checked_at == checked_at


def test_timestamps_load_back_as_aware_utc(session, make_title):
    plus_two = timezone(timedelta(hours=2))
    naive = make_title("naive", last_checked_at=datetime(2026, 10, 1, 12, 0))
    offset = make_title("offset", last_checked_at=datetime(2026, 10, 1, 14, 0, tzinfo=plus_two))
    session.expire_all()

    repo = Repository(session)
    expected = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
    assert repo.get_title(naive).last_checked_at == expected
    assert repo.get_title(offset).last_checked_at == expected
    assert repo.get_title(offset).created_at.tzinfo == timezone.utc


def test_empty_save_still_stamps_last_checked(session, make_title):
    title_id = make_title(watermark=3.0)
    repo = Repository(session)

    result = repo.save_new_chapters(title_id, [], 3.0)

    assert result.inserted == []
    title = repo.get_title(title_id)
    session.refresh(title)
    assert title.last_checked_at is not None
    assert title.watermark == 3.0


def test_watermark_never_regresses(session, make_title):
    title_id = make_title(watermark=50.0)
    repo = Repository(session)

    repo.save_new_chapters(title_id, [], 12.0)

    assert repo.get_watermark(title_id) == 50.0


def test_second_save_of_same_chapter_is_absorbed(session, make_title):
    title_id = make_title(watermark=12.0)
    repo = Repository(session)

    first = repo.save_new_chapters(title_id, _chapters(13), 13.0)
    second = repo.save_new_chapters(title_id, _chapters(13), 13.0)

    assert len(first.inserted) == 1
    assert second.inserted == []
    assert second.status == "conflict"
    assert second.conflict.numbers == [13.0]
    assert len(repo.list_chapters(title_id)) == 1


def test_concurrent_saves_persist_one_row(engine, make_title):
    title_id = make_title(watermark=12.0)
    barrier = threading.Barrier(2)
    results = []
    errors = []

    def _save():
        try:
            with Session(engine) as own_session:
                barrier.wait()
                results.append(
                    Repository(own_session).save_new_chapters(title_id, _chapters(13), 13.0)
                )
        except Exception as exc:  # surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=_save) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    assert sorted(len(r.inserted) for r in results) == [0, 1]
    with Session(engine) as check:
        rows = check.exec(
            select(Chapter).where(Chapter.title_id == title_id, Chapter.number == 13.0)
        ).all()
        assert len(rows) == 1
        assert check.get(Title, title_id).watermark == 13.0


def test_failed_save_changes_nothing(session, make_title):
    repo = Repository(session)

    with pytest.raises(IntegrityError):
        repo.save_new_chapters(9999, _chapters(1), 1.0)

    assert session.exec(select(Chapter)).all() == []


def test_add_title_updates_existing_source_key(session):
    repo = Repository(session)
    first = repo.add_title(name="Old", source="mangadex", source_key="abc")
    second = repo.add_title(name="New", source="mangadex", source_key="abc", priority=3)

    assert first.id == second.id
    assert second.name == "New"
    assert second.priority == 3
    assert len(repo.list_titles()) == 1


def test_set_title_enabled(session, make_title):
    title_id = make_title()
    repo = Repository(session)

    assert repo.set_title_enabled(title_id, False)
    assert repo.list_titles(enabled_only=True) == []
    assert not repo.set_title_enabled(4242, True)


def test_upsert_subscription_replaces_preferences(session, make_title):
    title_id = make_title()
    repo = Repository(session)
    repo.upsert_subscription(
        user_id="u1", title_id=title_id, notify_email=True, email_address="u1@example.com"
    )
    repo.upsert_subscription(user_id="u1", title_id=title_id, notify_push=True, push_token="tok")

    subscriptions = repo.list_subscriptions(title_id)
    assert len(subscriptions) == 1
    assert not subscriptions[0].notify_email
    assert subscriptions[0].notify_push
    assert subscriptions[0].push_token == "tok"
