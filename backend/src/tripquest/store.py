from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Protocol

import boto3
import structlog
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from .config import Settings
from .domain import (
    CreateQuestRequest,
    CreateSubmissionRequest,
    CreateTripRequest,
    Participant,
    Quest,
    ReviewDecision,
    Submission,
    SubmissionStatus,
    Trip,
    new_id,
)
from .invite_code import DEFAULT_LENGTH, generate_invite_code, normalize_invite_code

log = structlog.get_logger(__name__)

_INVITE_CODE_ATTEMPTS = 10


class Store(Protocol):
    def create_trip(self, req: CreateTripRequest) -> tuple[Trip, Participant]: ...

    def get_trip(self, trip_id: str) -> Trip | None: ...

    def find_trip_by_invite_code(self, invite_code: str) -> Trip | None: ...

    def list_trips_for_user(self, user_id: str) -> list[Trip]: ...

    def join_trip(
        self, trip_id: str, user_id: str, pseudo: str, avatar_url: str | None
    ) -> Participant: ...

    def leave_trip(self, trip_id: str, participant_id: str) -> None: ...

    def get_participant(self, trip_id: str, participant_id: str) -> Participant | None: ...

    def list_participants(self, trip_id: str) -> list[Participant]: ...

    def authenticate(
        self, trip_id: str, participant_id: str, participant_key: str
    ) -> Participant: ...

    def update_user_profile(
        self, user_id: str, pseudo: str, avatar_url: str | None
    ) -> list[Participant]: ...

    def adjust_participant_points(
        self, trip_id: str, participant_id: str, points: int, reason: str | None
    ) -> Participant: ...

    def create_quest(
        self, trip_id: str, creator: Participant, req: CreateQuestRequest
    ) -> Quest: ...

    def get_quest(self, trip_id: str, quest_id: str) -> Quest | None: ...

    def list_quests(self, trip_id: str) -> list[Quest]: ...

    def create_submission(
        self,
        trip_id: str,
        quest_id: str,
        submitter: Participant,
        req: CreateSubmissionRequest,
    ) -> Submission: ...

    def list_submissions(
        self, trip_id: str, status: SubmissionStatus | None = None
    ) -> list[Submission]: ...

    def review_submission(
        self, trip_id: str, submission_id: str, reviewer_id: str, decision: ReviewDecision
    ) -> Submission: ...




def _new_trip(req: CreateTripRequest, invite_code: str) -> Trip:
    return Trip(
        id=new_id("trip"),
        name=req.name,
        description=req.description,
        location=req.location,
        start_date=req.start_date,
        end_date=req.end_date,
        creator_id=req.user_id,
        invite_code=invite_code,
        created_at=_now(),
    )


def _new_participant(
    user_id: str, pseudo: str, avatar_url: str | None, role: str
) -> Participant:
    return Participant(
        id=user_id,
        pseudo=pseudo.strip(),
        avatar_url=avatar_url,
        role=role,
        joined_at=_now(),
        manual_points_adjustment=0,
        participant_key=new_id("k"),
    )


def _new_quest(trip_id: str, creator: Participant, req: CreateQuestRequest) -> Quest:
    return Quest(
        id=new_id("q"),
        trip_id=trip_id,
        creator_id=creator.id,
        creator_pseudo=creator.pseudo,
        title=req.title,
        description=req.description,
        points=req.points,
        deadline=req.deadline,
        created_at=_now(),
        is_active=True,
    )


def _new_submission(
    trip_id: str, quest: Quest, submitter: Participant, req: CreateSubmissionRequest
) -> Submission:
    if not quest.is_active:
        raise ValueError("quest is not active")
    deadline = quest.deadline
    if deadline is not None:
        if deadline.tzinfo is None:
            deadline = deadline.replace(tzinfo=timezone.utc)
        if deadline <= _now():
            raise ValueError("quest deadline has passed")
    return Submission(
        id=new_id("s"),
        trip_id=trip_id,
        quest_id=quest.id,
        submitter_id=submitter.id,
        submitter_pseudo=submitter.pseudo,
        image_url=req.image_url,
        notes=req.notes,
        submitted_at=_now(),
        status="pending",
        points_awarded=0,
    )


def _reviewed(
    submission: Submission, quest: Quest | None, reviewer_id: str, decision: ReviewDecision
) -> Submission:
    """pending から approved/rejected への遷移だけを許す。承認時は現在のクエスト点数を固定する。"""

    if submission.status != "pending":
        raise ValueError(f"submission already {submission.status}")
    if decision == "approved":
        if quest is None:
            raise KeyError("quest not found")
        points = int(quest.points)
    else:
        points = 0
    return submission.model_copy(
        update={
            "status": decision,
            "points_awarded": points,
            "reviewed_at": _now(),
            "reviewer_id": reviewer_id,
        }
    )


def _check_key(participant: Participant | None, participant_key: str) -> Participant:
    if participant is None:
        raise KeyError("participant not found")
    if not secrets.compare_digest(participant.participant_key, participant_key):
        raise PermissionError("invalid participant key")
    return participant


def _profile_update(pseudo: str, avatar_url: str | None) -> dict[str, Any]:
    # avatar 未指定なら既存の画像を残す
    update: dict[str, Any] = {"pseudo": pseudo}
    if avatar_url:
        update["avatar_url"] = avatar_url
    return update


@dataclass
class InMemoryStore(Store):
    trips: dict[str, Trip]
    participants: dict[tuple[str, str], Participant]
    quests: dict[tuple[str, str], Quest]
    submissions: dict[tuple[str, str], Submission]
    invite_code_length: int = DEFAULT_LENGTH
    invite_codes: dict[str, str] = field(default_factory=dict)
    # FastAPI の同期ルートはスレッドプールで並行に動く
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    @classmethod
    def create(cls, invite_code_length: int = DEFAULT_LENGTH) -> "InMemoryStore":
        return cls(
            trips={},
            participants={},
            quests={},
            submissions={},
            invite_code_length=invite_code_length,
        )

    def _unique_invite_code(self) -> str:
        for _ in range(_INVITE_CODE_ATTEMPTS):
            code = generate_invite_code(self.invite_code_length)
            if code not in self.invite_codes:
                return code
        raise RuntimeError("could not allocate a unique invite code")

    def create_trip(self, req: CreateTripRequest) -> tuple[Trip, Participant]:
        with self._lock:
            trip = _new_trip(req, self._unique_invite_code())
            organizer = _new_participant(req.user_id, req.pseudo, req.avatar_url, "organizer")
            self.trips[trip.id] = trip
            self.invite_codes[trip.invite_code] = trip.id
            self.participants[(trip.id, organizer.id)] = organizer
        log.info("trip_created", trip_id=trip.id, creator_id=organizer.id)
        return trip, organizer

    def get_trip(self, trip_id: str) -> Trip | None:
        return self.trips.get(trip_id)

    def find_trip_by_invite_code(self, invite_code: str) -> Trip | None:
        trip_id = self.invite_codes.get(normalize_invite_code(invite_code))
        if trip_id is None:
            return None
        return self.trips.get(trip_id)

    def list_trips_for_user(self, user_id: str) -> list[Trip]:
        with self._lock:
            return [
                self.trips[tid]
                for (tid, pid) in self.participants
                if pid == user_id and tid in self.trips
            ]

    def join_trip(
        self, trip_id: str, user_id: str, pseudo: str, avatar_url: str | None
    ) -> Participant:
        with self._lock:
            if trip_id not in self.trips:
                raise KeyError("trip not found")
            if (trip_id, user_id) in self.participants:
                raise ValueError("already a member of this trip")
            participant = _new_participant(user_id, pseudo, avatar_url, "participant")
            self.participants[(trip_id, participant.id)] = participant
        log.info("trip_joined", trip_id=trip_id, participant_id=participant.id)
        return participant

    def leave_trip(self, trip_id: str, participant_id: str) -> None:
        with self._lock:
            if self.participants.pop((trip_id, participant_id), None) is None:
                raise KeyError("participant not found")
        log.info("trip_left", trip_id=trip_id, participant_id=participant_id)

    def get_participant(self, trip_id: str, participant_id: str) -> Participant | None:
        return self.participants.get((trip_id, participant_id))

    def list_participants(self, trip_id: str) -> list[Participant]:
        with self._lock:
            return [p for (tid, _), p in self.participants.items() if tid == trip_id]

    def authenticate(
        self, trip_id: str, participant_id: str, participant_key: str
    ) -> Participant:
        return _check_key(self.get_participant(trip_id, participant_id), participant_key)

    def update_user_profile(
        self, user_id: str, pseudo: str, avatar_url: str | None
    ) -> list[Participant]:
        update = _profile_update(pseudo, avatar_url)
        updated: list[Participant] = []
        with self._lock:
            for key, participant in list(self.participants.items()):
                if key[1] != user_id:
                    continue
                self.participants[key] = participant.model_copy(update=update)
                updated.append(self.participants[key])
            for key, quest in list(self.quests.items()):
                if quest.creator_id == user_id:
                    self.quests[key] = quest.model_copy(update={"creator_pseudo": pseudo})
        log.info("profile_synced", user_id=user_id, trips=len(updated))
        return updated

    def adjust_participant_points(
        self, trip_id: str, participant_id: str, points: int, reason: str | None
    ) -> Participant:
        with self._lock:
            participant = self.get_participant(trip_id, participant_id)
            if participant is None:
                raise KeyError("participant not found")
            updated = participant.model_copy(
                update={
                    "manual_points_adjustment": participant.manual_points_adjustment
                    + int(points),
                    "last_adjustment_reason": reason,
                }
            )
            self.participants[(trip_id, participant_id)] = updated
        log.info(
            "points_adjusted",
            trip_id=trip_id,
            participant_id=participant_id,
            delta=int(points),
            total_adjustment=updated.manual_points_adjustment,
        )
        return updated

    def create_quest(
        self, trip_id: str, creator: Participant, req: CreateQuestRequest
    ) -> Quest:
        with self._lock:
            if trip_id not in self.trips:
                raise KeyError("trip not found")
            quest = _new_quest(trip_id, creator, req)
            self.quests[(trip_id, quest.id)] = quest
        log.info("quest_created", trip_id=trip_id, quest_id=quest.id, points=quest.points)
        return quest

    def get_quest(self, trip_id: str, quest_id: str) -> Quest | None:
        return self.quests.get((trip_id, quest_id))

    def list_quests(self, trip_id: str) -> list[Quest]:
        with self._lock:
            return [q for (tid, _), q in self.quests.items() if tid == trip_id]

    def create_submission(
        self,
        trip_id: str,
        quest_id: str,
        submitter: Participant,
        req: CreateSubmissionRequest,
    ) -> Submission:
        with self._lock:
            quest = self.get_quest(trip_id, quest_id)
            if quest is None:
                raise KeyError("quest not found")
            submission = _new_submission(trip_id, quest, submitter, req)
            self.submissions[(trip_id, submission.id)] = submission
        log.info(
            "submission_created",
            trip_id=trip_id,
            quest_id=quest_id,
            submission_id=submission.id,
        )
        return submission

    def list_submissions(
        self, trip_id: str, status: SubmissionStatus | None = None
    ) -> list[Submission]:
        with self._lock:
            return [
                s
                for (tid, _), s in self.submissions.items()
                if tid == trip_id and (status is None or s.status == status)
            ]

    def review_submission(
        self, trip_id: str, submission_id: str, reviewer_id: str, decision: ReviewDecision
    ) -> Submission:
        with self._lock:
            submission = self.submissions.get((trip_id, submission_id))
            if submission is None:
                raise KeyError("submission not found")
            quest = self.get_quest(trip_id, submission.quest_id)
            reviewed = _reviewed(submission, quest, reviewer_id, decision)
            self.submissions[(trip_id, submission_id)] = reviewed
        log.info(
            "submission_reviewed",
            trip_id=trip_id,
            submission_id=submission_id,
            status=reviewed.status,
            points_awarded=reviewed.points_awarded,
        )
        return reviewed


@dataclass
class DynamoDBStore(Store):
    table_name: str
    invite_code_length: int = DEFAULT_LENGTH
    resource: Any = field(default=None, repr=False, compare=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> "DynamoDBStore":
        if not settings.ddb_table_name:
            raise RuntimeError("DDB_TABLE_NAME is required for dynamodb store")
        return cls(
            table_name=settings.ddb_table_name,
            invite_code_length=settings.invite_code_length,
        )

    @property
    def _table(self):
        ddb = self.resource or boto3.resource("dynamodb")
        return ddb.Table(self.table_name)

    def _query_all(self, pk: str, sk_prefix: str) -> list[dict[str, Any]]:
        kwargs: dict[str, Any] = {
            "KeyConditionExpression": Key("pk").eq(pk) & Key("sk").begins_with(sk_prefix)
        }
        items: list[dict[str, Any]] = []
        while True:
            resp = self._table.query(**kwargs)
            items.extend(resp.get("Items", []))
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                return items
            kwargs["ExclusiveStartKey"] = last_key

    def _get_item(self, pk: str, sk: str) -> dict[str, Any] | None:
        resp = self._table.get_item(Key={"pk": pk, "sk": sk})
        return resp.get("Item")

    def _reserve_invite_code(self, trip_id: str) -> str:
        for _ in range(_INVITE_CODE_ATTEMPTS):
            code = generate_invite_code(self.invite_code_length)
            try:
                self._table.put_item(
                    Item={"pk": f"INVITE#{code}", "sk": "META", "trip_id": trip_id},
                    ConditionExpression=Attr("pk").not_exists(),
                )
            except ClientError as e:
                if _is_conditional_failure(e):
                    log.info("invite_code_collision", trip_id=trip_id)
                    continue
                raise
            return code
        raise RuntimeError("could not allocate a unique invite code")

    def create_trip(self, req: CreateTripRequest) -> tuple[Trip, Participant]:
        trip = _new_trip(req, "")
        trip = trip.model_copy(update={"invite_code": self._reserve_invite_code(trip.id)})
        organizer = _new_participant(req.user_id, req.pseudo, req.avatar_url, "organizer")

        with self._table.batch_writer() as batch:
            batch.put_item(Item=_item(f"TRIP#{trip.id}", "META", trip))
            batch.put_item(
                Item=_item(f"TRIP#{trip.id}", f"PARTICIPANT#{organizer.id}", organizer)
            )
            batch.put_item(Item=_membership_item(organizer.id, trip.id, organizer))
        log.info("trip_created", trip_id=trip.id, creator_id=organizer.id)
        return trip, organizer

    def get_trip(self, trip_id: str) -> Trip | None:
        item = self._get_item(f"TRIP#{trip_id}", "META")
        if not item:
            return None
        return Trip.model_validate(_plain(item))

    def find_trip_by_invite_code(self, invite_code: str) -> Trip | None:
        item = self._get_item(f"INVITE#{normalize_invite_code(invite_code)}", "META")
        if not item:
            return None
        return self.get_trip(item["trip_id"])

    def _memberships(self, user_id: str) -> list[dict[str, Any]]:
        items = self._query_all(f"USER#{user_id}", "TRIP#")
        return sorted(items, key=lambda it: it.get("joined_at") or "")

    def list_trips_for_user(self, user_id: str) -> list[Trip]:
        trips: list[Trip] = []
        for it in self._memberships(user_id):
            trip = self.get_trip(it["trip_id"])
            if trip is None:
                log.warning("membership_without_trip", user_id=user_id, trip_id=it["trip_id"])
                continue
            trips.append(trip)
        return trips

    def join_trip(
        self, trip_id: str, user_id: str, pseudo: str, avatar_url: str | None
    ) -> Participant:
        participant = _new_participant(user_id, pseudo, avatar_url, "participant")
        try:
            self._table.put_item(
                Item=_item(f"TRIP#{trip_id}", f"PARTICIPANT#{participant.id}", participant),
                ConditionExpression=Attr("sk").not_exists(),
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                raise ValueError("already a member of this trip") from e
            raise
        self._table.put_item(Item=_membership_item(user_id, trip_id, participant))
        log.info("trip_joined", trip_id=trip_id, participant_id=participant.id)
        return participant

    def leave_trip(self, trip_id: str, participant_id: str) -> None:
        try:
            self._table.delete_item(
                Key={"pk": f"TRIP#{trip_id}", "sk": f"PARTICIPANT#{participant_id}"},
                ConditionExpression=Attr("sk").exists(),
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                raise KeyError("participant not found") from e
            raise
        self._table.delete_item(Key={"pk": f"USER#{participant_id}", "sk": f"TRIP#{trip_id}"})
        log.info("trip_left", trip_id=trip_id, participant_id=participant_id)

    def get_participant(self, trip_id: str, participant_id: str) -> Participant | None:
        item = self._get_item(f"TRIP#{trip_id}", f"PARTICIPANT#{participant_id}")
        if not item:
            return None
        return Participant.model_validate(_plain(item))

    def list_participants(self, trip_id: str) -> list[Participant]:
        return [
            Participant.model_validate(_plain(it))
            for it in self._query_all(f"TRIP#{trip_id}", "PARTICIPANT#")
        ]

    def authenticate(
        self, trip_id: str, participant_id: str, participant_key: str
    ) -> Participant:
        return _check_key(self.get_participant(trip_id, participant_id), participant_key)

    def _update_participant(
        self, trip_id: str, participant_id: str, **kwargs: Any
    ) -> Participant:
        try:
            resp = self._table.update_item(
                Key={"pk": f"TRIP#{trip_id}", "sk": f"PARTICIPANT#{participant_id}"},
                ConditionExpression=Attr("sk").exists(),
                ReturnValues="ALL_NEW",
                **kwargs,
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                raise KeyError("participant not found") from e
            raise
        return Participant.model_validate(_plain(resp["Attributes"]))

    def update_user_profile(
        self, user_id: str, pseudo: str, avatar_url: str | None
    ) -> list[Participant]:
        update = _profile_update(pseudo, avatar_url)
        expression = "SET " + ", ".join(f"{name} = :{name}" for name in update)
        values = {f":{name}": value for name, value in update.items()}

        updated: list[Participant] = []
        for it in self._memberships(user_id):
            trip_id = it["trip_id"]
            try:
                updated.append(
                    self._update_participant(
                        trip_id,
                        user_id,
                        UpdateExpression=expression,
                        ExpressionAttributeValues=values,
                    )
                )
            except KeyError:
                log.warning("profile_sync_skipped", user_id=user_id, trip_id=trip_id)
                continue
            for quest in self._query_all(f"TRIP#{trip_id}", "QUEST#"):
                if quest.get("creator_id") != user_id:
                    continue
                self._table.update_item(
                    Key={"pk": quest["pk"], "sk": quest["sk"]},
                    UpdateExpression="SET creator_pseudo = :pseudo",
                    ExpressionAttributeValues={":pseudo": pseudo},
                )
        log.info("profile_synced", user_id=user_id, trips=len(updated))
        return updated

    def adjust_participant_points(
        self, trip_id: str, participant_id: str, points: int, reason: str | None
    ) -> Participant:
        # ADD は同時更新でも加算が失われない
        updated = self._update_participant(
            trip_id,
            participant_id,
            UpdateExpression=(
                "ADD manual_points_adjustment :delta SET last_adjustment_reason = :reason"
            ),
            ExpressionAttributeValues={":delta": int(points), ":reason": reason},
        )
        log.info(
            "points_adjusted",
            trip_id=trip_id,
            participant_id=participant_id,
            delta=int(points),
            total_adjustment=updated.manual_points_adjustment,
        )
        return updated

    def create_quest(
        self, trip_id: str, creator: Participant, req: CreateQuestRequest
    ) -> Quest:
        quest = _new_quest(trip_id, creator, req)
        self._table.put_item(Item=_item(f"TRIP#{trip_id}", f"QUEST#{quest.id}", quest))
        log.info("quest_created", trip_id=trip_id, quest_id=quest.id, points=quest.points)
        return quest

    def get_quest(self, trip_id: str, quest_id: str) -> Quest | None:
        item = self._get_item(f"TRIP#{trip_id}", f"QUEST#{quest_id}")
        if not item:
            return None
        return Quest.model_validate(_plain(item))

    def list_quests(self, trip_id: str) -> list[Quest]:
        return [
            Quest.model_validate(_plain(it))
            for it in self._query_all(f"TRIP#{trip_id}", "QUEST#")
        ]

    def create_submission(
        self,
        trip_id: str,
        quest_id: str,
        submitter: Participant,
        req: CreateSubmissionRequest,
    ) -> Submission:
        quest = self.get_quest(trip_id, quest_id)
        if quest is None:
            raise KeyError("quest not found")
        submission = _new_submission(trip_id, quest, submitter, req)
        self._table.put_item(
            Item=_item(f"TRIP#{trip_id}", f"SUBMISSION#{submission.id}", submission)
        )
        log.info(
            "submission_created",
            trip_id=trip_id,
            quest_id=quest_id,
            submission_id=submission.id,
        )
        return submission

    def list_submissions(
        self, trip_id: str, status: SubmissionStatus | None = None
    ) -> list[Submission]:
        submissions = [
            Submission.model_validate(_plain(it))
            for it in self._query_all(f"TRIP#{trip_id}", "SUBMISSION#")
        ]
        if status is None:
            return submissions
        return [s for s in submissions if s.status == status]

    def review_submission(
        self, trip_id: str, submission_id: str, reviewer_id: str, decision: ReviewDecision
    ) -> Submission:
        item = self._get_item(f"TRIP#{trip_id}", f"SUBMISSION#{submission_id}")
        if not item:
            raise KeyError("submission not found")
        submission = Submission.model_validate(_plain(item))
        quest = self.get_quest(trip_id, submission.quest_id)
        reviewed = _reviewed(submission, quest, reviewer_id, decision)

        try:
            self._table.put_item(
                Item=_item(f"TRIP#{trip_id}", f"SUBMISSION#{submission_id}", reviewed),
                ConditionExpression=Attr("status").eq("pending"),
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                raise ValueError("submission already reviewed") from e
            raise
        log.info(
            "submission_reviewed",
            trip_id=trip_id,
            submission_id=submission_id,
            status=reviewed.status,
            points_awarded=reviewed.points_awarded,
        )
        return reviewed


def build_store(settings: Settings) -> Store:
    if settings.store_backend == "dynamodb":
        return DynamoDBStore.from_settings(settings)
    return InMemoryStore.create(invite_code_length=settings.invite_code_length)


def _item(pk: str, sk: str, record: Any) -> dict[str, Any]:
    return {"pk": pk, "sk": sk, **record.model_dump(mode="json")}


def _membership_item(user_id: str, trip_id: str, participant: Participant) -> dict[str, Any]:
    joined_at = participant.joined_at.isoformat() if participant.joined_at else None
    return {
        "pk": f"USER#{user_id}",
        "sk": f"TRIP#{trip_id}",
        "trip_id": trip_id,
        "joined_at": joined_at,
    }


def _plain(item: dict[str, Any]) -> dict[str, Any]:
    # DynamoDB の数値は Decimal で返る
    return {k: int(v) if isinstance(v, Decimal) else v for k, v in item.items()}


def _is_conditional_failure(e: ClientError) -> bool:
    return e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def _now() -> datetime:
    return datetime.now(timezone.utc)
