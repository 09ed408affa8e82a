from __future__ import annotations

import sys
import threading
from datetime import datetime, timedelta, timezone

import pytest

from tripquest.domain import (
    CreateQuestRequest,
    CreateSubmissionRequest,
    CreateTripRequest,
)
from tripquest.ranking import aggregate_leaderboard
from tripquest.store import InMemoryStore


def _setup():
    store = InMemoryStore.create()
    trip, organizer = store.create_trip(
        CreateTripRequest(user_id="org", pseudo="boss", name="Lisbon")
    )
    return store, trip, organizer


def _quest(store, trip, organizer, points=10):
    return store.create_quest(
        trip.id,
        organizer,
        CreateQuestRequest(
            title="Find a tram", description="Take a photo of tram 28", points=points
        ),
    )


def _submit(store, trip, quest, participant):
    return store.create_submission(
        trip.id, quest.id, participant, CreateSubmissionRequest(image_url="http://img")
    )


def test_create_trip_makes_creator_organizer():
    """作成者は organizer として参加する。"""

    store, trip, organizer = _setup()
    assert organizer.role == "organizer"
    assert organizer.id == "org"
    assert store.find_trip_by_invite_code(trip.invite_code.lower()) == trip
    assert store.list_participants(trip.id) == [organizer]


def test_join_trip_rejects_duplicate_member():
    """同じユーザーが同じ旅行に二重参加することはできない。"""

    store, trip, _ = _setup()
    store.join_trip(trip.id, "u1", "ann", None)
    with pytest.raises(ValueError):
        store.join_trip(trip.id, "u1", "ann", None)


def test_join_same_user_in_different_trips():
    store, trip1, _ = _setup()
    trip2, _ = store.create_trip(CreateTripRequest(user_id="org", pseudo="boss", name="Porto"))

    store.join_trip(trip1.id, "u1", "ann", None)
    store.join_trip(trip2.id, "u1", "ann", None)
    assert trip1.invite_code != trip2.invite_code


def test_authenticate_checks_key():
    store, trip, organizer = _setup()
    assert store.authenticate(trip.id, organizer.id, organizer.participant_key) == organizer
    with pytest.raises(PermissionError):
        store.authenticate(trip.id, organizer.id, "wrong")
    with pytest.raises(KeyError):
        store.authenticate(trip.id, "nobody", "k")


def test_adjust_points_is_additive():
    """手動調整は加算で積み上がる。"""

    store, trip, _ = _setup()
    p = store.join_trip(trip.id, "u1", "ann", None)
    store.adjust_participant_points(trip.id, p.id, 5, "bonus")
    updated = store.adjust_participant_points(trip.id, p.id, -2, None)

    assert updated.manual_points_adjustment == 3
    assert updated.last_adjustment_reason is None
    with pytest.raises(KeyError):
        store.adjust_participant_points(trip.id, "nobody", 1, None)


def test_review_approves_with_quest_points_snapshot():
    """承認時の点数を固定し、その後のクエスト点数変更には追従しない。"""

    store, trip, organizer = _setup()
    p = store.join_trip(trip.id, "u1", "ann", None)
    quest = _quest(store, trip, organizer, points=10)
    submission = _submit(store, trip, quest, p)
    assert submission.status == "pending"
    assert submission.points_awarded == 0

    approved = store.review_submission(trip.id, submission.id, organizer.id, "approved")
    assert approved.status == "approved"
    assert approved.points_awarded == 10
    assert approved.reviewer_id == organizer.id
    assert approved.reviewed_at is not None

    store.quests[(trip.id, quest.id)] = quest.model_copy(update={"points": 99})
    assert store.list_submissions(trip.id, status="approved")[0].points_awarded == 10


def test_review_rejects_sets_zero_and_is_terminal():
    """rejected は0点。確定済みの提出は再レビューできない。"""

    store, trip, organizer = _setup()
    p = store.join_trip(trip.id, "u1", "ann", None)
    quest = _quest(store, trip, organizer)
    submission = _submit(store, trip, quest, p)

    rejected = store.review_submission(trip.id, submission.id, organizer.id, "rejected")
    assert rejected.points_awarded == 0
    with pytest.raises(ValueError):
        store.review_submission(trip.id, submission.id, organizer.id, "approved")
    with pytest.raises(KeyError):
        store.review_submission(trip.id, "missing", organizer.id, "approved")


def test_submission_to_unknown_or_inactive_quest():
    store, trip, organizer = _setup()
    with pytest.raises(KeyError):
        store.create_submission(
            trip.id, "missing", organizer, CreateSubmissionRequest(image_url="http://img")
        )

    quest = _quest(store, trip, organizer)
    store.quests[(trip.id, quest.id)] = quest.model_copy(update={"is_active": False})
    with pytest.raises(ValueError):
        _submit(store, trip, quest, organizer)


def test_leaving_trip_drops_points_from_leaderboard():
    """退出した参加者の承認済み提出は順位表に載らない。"""

    store, trip, organizer = _setup()
    p = store.join_trip(trip.id, "u1", "ann", None)
    quest = _quest(store, trip, organizer)
    submission = _submit(store, trip, quest, p)
    store.review_submission(trip.id, submission.id, organizer.id, "approved")

    store.leave_trip(trip.id, p.id)
    with pytest.raises(KeyError):
        store.leave_trip(trip.id, p.id)

    board = aggregate_leaderboard(
        store.list_participants(trip.id), store.list_submissions(trip.id)
    )
    assert [(e.user_id, e.total_points) for e in board] == [("org", 0)]


def test_update_user_profile_syncs_every_trip_and_created_quests():
    """プロフィール変更は参加中の全旅行と作成済みクエストに反映される。"""

    store, trip1, organizer = _setup()
    trip2, _ = store.create_trip(CreateTripRequest(user_id="u9", pseudo="eve", name="Porto"))
    store.join_trip(trip2.id, organizer.id, "boss", "http://old")
    quest = _quest(store, trip1, organizer)

    updated = store.update_user_profile(organizer.id, "chief", "http://av")

    assert len(updated) == 2
    for trip in (trip1, trip2):
        p = store.get_participant(trip.id, organizer.id)
        assert (p.pseudo, p.avatar_url) == ("chief", "http://av")
    assert store.get_quest(trip1.id, quest.id).creator_pseudo == "chief"
    assert store.get_participant(trip2.id, "u9").pseudo == "eve"


def test_update_user_profile_keeps_avatar_when_not_given():
    store, trip, organizer = _setup()
    store.update_user_profile(organizer.id, "chief", "http://av")
    store.update_user_profile(organizer.id, "chief2", None)
    assert store.get_participant(trip.id, organizer.id).avatar_url == "http://av"


def test_list_trips_for_user_in_join_order():
    """参加中の旅行を参加順に返し、退出した旅行は含めない。"""

    store, trip1, _ = _setup()
    trip2, _ = store.create_trip(CreateTripRequest(user_id="org", pseudo="boss", name="Porto"))
    trip3, _ = store.create_trip(CreateTripRequest(user_id="u9", pseudo="eve", name="Faro"))
    store.join_trip(trip3.id, "u1", "ann", None)
    store.join_trip(trip1.id, "u1", "ann", None)

    assert [t.id for t in store.list_trips_for_user("org")] == [trip1.id, trip2.id]
    assert [t.id for t in store.list_trips_for_user("u1")] == [trip3.id, trip1.id]

    store.leave_trip(trip3.id, "u1")
    assert [t.id for t in store.list_trips_for_user("u1")] == [trip1.id]
    assert store.list_trips_for_user("nobody") == []


def test_submission_after_deadline_is_refused():
    """締切を過ぎたクエストには提出できない。"""

    store, trip, organizer = _setup()
    quest = _quest(store, trip, organizer)
    past = datetime.now(timezone.utc) - timedelta(minutes=1)
    store.quests[(trip.id, quest.id)] = quest.model_copy(update={"deadline": past})

    with pytest.raises(ValueError):
        _submit(store, trip, quest, organizer)


@pytest.fixture()
def fast_switching():
    interval = sys.getswitchinterval()
    sys.setswitchinterval(1e-6)
    yield
    sys.setswitchinterval(interval)


def _run_threads(n: int, target) -> None:
    barrier = threading.Barrier(n)

    def run(i: int) -> None:
        barrier.wait()
        target(i)

    threads = [threading.Thread(target=run, args=(i,)) for i in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()


def test_concurrent_adjustments_are_not_lost(fast_switching):
    """並行した手動調整でも加算が失われない。"""

    store, trip, _ = _setup()
    p = store.join_trip(trip.id, "u1", "ann", None)

    def add(_i: int) -> None:
        for _ in range(200):
            store.adjust_participant_points(trip.id, p.id, 1, None)

    _run_threads(8, add)
    assert store.get_participant(trip.id, p.id).manual_points_adjustment == 1600


def test_concurrent_reviews_transition_once(fast_switching):
    """同じ提出への同時レビューは片方だけが成功する。"""

    store, trip, organizer = _setup()
    p = store.join_trip(trip.id, "u1", "ann", None)
    quest = _quest(store, trip, organizer)

    for _ in range(100):
        submission = _submit(store, trip, quest, p)
        outcomes: list[str] = []

        def review(i: int) -> None:
            decision = "approved" if i == 0 else "rejected"
            try:
                store.review_submission(trip.id, submission.id, organizer.id, decision)
            except ValueError:
                outcomes.append("conflict")
            else:
                outcomes.append(decision)

        _run_threads(2, review)
        assert sorted(outcomes).count("conflict") == 1
