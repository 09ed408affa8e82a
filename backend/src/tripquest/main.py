from __future__ import annotations

import structlog
from fastapi import FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from mangum import Mangum

from .config import Settings, load_settings
from .domain import (
    AdjustPointsRequest,
    CreateQuestRequest,
    CreateSubmissionRequest,
    CreateTripRequest,
    CreateTripResponse,
    JoinTripRequest,
    JoinTripResponse,
    LeaderboardResponse,
    Participant,
    ParticipantPublic,
    Quest,
    ReviewSubmissionRequest,
    ScoreResponse,
    Submission,
    SubmissionStatus,
    Trip,
    UpdateProfileRequest,
)
from .logging_setup import configure_logging
from .ranking import aggregate_leaderboard, compute_participant_score
from .store import Store, build_store

log = structlog.get_logger(__name__)


def create_app(store: Store | None = None, settings: Settings | None = None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    app = FastAPI(title="Trip Quest")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    store = store or build_store(settings)
    log.info("app_started", app_name=settings.app_name, store_backend=settings.store_backend)

    def require_trip(trip_id: str) -> Trip:
        trip = store.get_trip(trip_id)
        if trip is None:
            raise HTTPException(status_code=404, detail="trip not found")
        return trip

    def require_member(
        trip_id: str, participant_id: str | None, participant_key: str | None
    ) -> Participant:
        if not participant_id or not participant_key:
            raise HTTPException(
                status_code=401, detail="X-Participant-Id and X-Participant-Key are required"
            )
        require_trip(trip_id)
        try:
            return store.authenticate(trip_id, participant_id, participant_key)
        except KeyError:
            raise HTTPException(status_code=403, detail="not a member of this trip")
        except PermissionError:
            raise HTTPException(status_code=403, detail="invalid participant key")

    def require_organizer(
        trip_id: str, participant_id: str | None, participant_key: str | None
    ) -> Participant:
        member = require_member(trip_id, participant_id, participant_key)
        if not member.is_organizer:
            raise HTTPException(status_code=403, detail="organizer only")
        return member

    def holds_key(trip_id: str, user_id: str, participant_key: str) -> bool:
        try:
            store.authenticate(trip_id, user_id, participant_key)
        except (KeyError, PermissionError):
            return False
        return True

    def require_self(member: Participant, participant_id: str) -> None:
        if member.id != participant_id:
            raise HTTPException(status_code=403, detail="can only act on yourself")

    @app.get("/health")
    def health():
        return {"ok": True}

    @app.post("/api/trips", response_model=CreateTripResponse, status_code=201)
    def create_trip(req: CreateTripRequest):
        trip, organizer = store.create_trip(req)
        return CreateTripResponse(
            trip_id=trip.id,
            invite_code=trip.invite_code,
            participant_id=organizer.id,
            participant_key=organizer.participant_key,
        )

    @app.post("/api/trips/join", response_model=JoinTripResponse, status_code=201)
    def join_trip(req: JoinTripRequest):
        trip = store.find_trip_by_invite_code(req.invite_code)
        if trip is None:
            raise HTTPException(status_code=404, detail="invalid or expired invite code")
        try:
            participant = store.join_trip(trip.id, req.user_id, req.pseudo, req.avatar_url)
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return JoinTripResponse(
            trip_id=trip.id,
            trip_name=trip.name,
            participant_id=participant.id,
            participant_key=participant.participant_key,
        )

    @app.get("/api/users/{user_id}/trips", response_model=list[Trip])
    def list_my_trips(
        user_id: str,
        x_participant_id: str | None = Header(default=None, alias="X-Participant-Id"),
        x_participant_key: str | None = Header(default=None, alias="X-Participant-Key"),
    ):
        if not x_participant_id or not x_participant_key:
            raise HTTPException(
                status_code=401, detail="X-Participant-Id and X-Participant-Key are required"
            )
        if x_participant_id != user_id:
            raise HTTPException(status_code=403, detail="can only list your own trips")
        trips = store.list_trips_for_user(user_id)
        if trips and not any(holds_key(t.id, user_id, x_participant_key) for t in trips):
            raise HTTPException(status_code=403, detail="invalid participant key")
        return trips

    @app.get("/api/trips/{trip_id}", response_model=Trip)
    def get_trip(
        trip_id: str,
        x_participant_id: str | None = Header(default=None, alias="X-Participant-Id"),
        x_participant_key: str | None = Header(default=None, alias="X-Participant-Key"),
    ):
        require_member(trip_id, x_participant_id, x_participant_key)
        return require_trip(trip_id)

    @app.get("/api/trips/{trip_id}/participants", response_model=list[ParticipantPublic])
    def list_participants(
        trip_id: str,
        x_participant_id: str | None = Header(default=None, alias="X-Participant-Id"),
        x_participant_key: str | None = Header(default=None, alias="X-Participant-Key"),
    ):
        require_member(trip_id, x_participant_id, x_participant_key)
        return [ParticipantPublic.from_participant(p) for p in store.list_participants(trip_id)]

    @app.delete("/api/trips/{trip_id}/participants/{participant_id}")
    def leave_trip(
        trip_id: str,
        participant_id: str,
        x_participant_id: str | None = Header(default=None, alias="X-Participant-Id"),
        x_participant_key: str | None = Header(default=None, alias="X-Participant-Key"),
    ):
        member = require_member(trip_id, x_participant_id, x_participant_key)
        require_self(member, participant_id)
        try:
            store.leave_trip(trip_id, participant_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="participant not found")
        return {"ok": True}

    @app.put(
        "/api/trips/{trip_id}/participants/{participant_id}/profile",
        response_model=ParticipantPublic,
    )
    def update_profile(
        trip_id: str,
        participant_id: str,
        req: UpdateProfileRequest,
        x_participant_id: str | None = Header(default=None, alias="X-Participant-Id"),
        x_participant_key: str | None = Header(default=None, alias="X-Participant-Key"),
    ):
        member = require_member(trip_id, x_participant_id, x_participant_key)
        require_self(member, participant_id)
        # 参加中の全旅行と作成したクエストへ反映する
        store.update_user_profile(participant_id, req.pseudo, req.avatar_url)
        updated = store.get_participant(trip_id, participant_id)
        if updated is None:
            raise HTTPException(status_code=404, detail="participant not found")
        return ParticipantPublic.from_participant(updated)

    @app.post(
        "/api/trips/{trip_id}/participants/{participant_id}/adjustments",
        response_model=ParticipantPublic,
    )
    def adjust_points(
        trip_id: str,
        participant_id: str,
        req: AdjustPointsRequest,
        x_participant_id: str | None = Header(default=None, alias="X-Participant-Id"),
        x_participant_key: str | None = Header(default=None, alias="X-Participant-Key"),
    ):
        require_organizer(trip_id, x_participant_id, x_participant_key)
        try:
            updated = store.adjust_participant_points(
                trip_id, participant_id, req.points, req.reason
            )
        except KeyError:
            raise HTTPException(status_code=404, detail="participant not found")
        return ParticipantPublic.from_participant(updated)

    @app.get(
        "/api/trips/{trip_id}/participants/{participant_id}/score",
        response_model=ScoreResponse,
    )
    def participant_score(
        trip_id: str,
        participant_id: str,
        x_participant_id: str | None = Header(default=None, alias="X-Participant-Id"),
        x_participant_key: str | None = Header(default=None, alias="X-Participant-Key"),
    ):
        require_member(trip_id, x_participant_id, x_participant_key)
        participant = store.get_participant(trip_id, participant_id)
        if participant is None:
            raise HTTPException(status_code=404, detail="participant not found")
        total = compute_participant_score(
            participant.id,
            store.list_submissions(trip_id, status="approved"),
            participant.manual_points_adjustment,
        )
        return ScoreResponse(trip_id=trip_id, participant_id=participant.id, total_points=total)

    @app.post("/api/trips/{trip_id}/quests", response_model=Quest, status_code=201)
    def create_quest(
        trip_id: str,
        req: CreateQuestRequest,
        x_participant_id: str | None = Header(default=None, alias="X-Participant-Id"),
        x_participant_key: str | None = Header(default=None, alias="X-Participant-Key"),
    ):
        member = require_member(trip_id, x_participant_id, x_participant_key)
        return store.create_quest(trip_id, member, req)

    @app.get("/api/trips/{trip_id}/quests", response_model=list[Quest])
    def list_quests(
        trip_id: str,
        x_participant_id: str | None = Header(default=None, alias="X-Participant-Id"),
        x_participant_key: str | None = Header(default=None, alias="X-Participant-Key"),
    ):
        require_member(trip_id, x_participant_id, x_participant_key)
        return store.list_quests(trip_id)

    @app.post(
        "/api/trips/{trip_id}/quests/{quest_id}/submissions",
        response_model=Submission,
        status_code=201,
    )
    def create_submission(
        trip_id: str,
        quest_id: str,
        req: CreateSubmissionRequest,
        x_participant_id: str | None = Header(default=None, alias="X-Participant-Id"),
        x_participant_key: str | None = Header(default=None, alias="X-Participant-Key"),
    ):
        member = require_member(trip_id, x_participant_id, x_participant_key)
        try:
            return store.create_submission(trip_id, quest_id, member, req)
        except KeyError:
            raise HTTPException(status_code=404, detail="quest not found")
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))

    @app.get("/api/trips/{trip_id}/submissions", response_model=list[Submission])
    def list_submissions(
        trip_id: str,
        status: SubmissionStatus | None = None,
        x_participant_id: str | None = Header(default=None, alias="X-Participant-Id"),
        x_participant_key: str | None = Header(default=None, alias="X-Participant-Key"),
    ):
        require_member(trip_id, x_participant_id, x_participant_key)
        return store.list_submissions(trip_id, status=status)

    @app.post(
        "/api/trips/{trip_id}/submissions/{submission_id}/review",
        response_model=Submission,
    )
    def review_submission(
        trip_id: str,
        submission_id: str,
        req: ReviewSubmissionRequest,
        x_participant_id: str | None = Header(default=None, alias="X-Participant-Id"),
        x_participant_key: str | None = Header(default=None, alias="X-Participant-Key"),
    ):
        reviewer = require_organizer(trip_id, x_participant_id, x_participant_key)
        try:
            return store.review_submission(trip_id, submission_id, reviewer.id, req.decision)
        except KeyError:
            raise HTTPException(status_code=404, detail="submission not found")
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))

    @app.get("/api/trips/{trip_id}/leaderboard", response_model=LeaderboardResponse)
    def leaderboard(
        trip_id: str,
        x_participant_id: str | None = Header(default=None, alias="X-Participant-Id"),
        x_participant_key: str | None = Header(default=None, alias="X-Participant-Key"),
    ):
        require_member(trip_id, x_participant_id, x_participant_key)
        trip = require_trip(trip_id)
        participants = store.list_participants(trip_id)
        approved = store.list_submissions(trip_id, status="approved")

        return LeaderboardResponse(
            trip_id=trip.id,
            trip_name=trip.name,
            entries=aggregate_leaderboard(participants, approved),
        )

    return app


app = create_app()
handler = Mangum(app)
