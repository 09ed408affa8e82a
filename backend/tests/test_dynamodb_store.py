from __future__ import annotations

import boto3
import pytest
from botocore.stub import ANY, Stubber

import tripquest.store as store_module
from tripquest.domain import CreateTripRequest
from tripquest.store import DynamoDBStore

TABLE = "trips"


@pytest.fixture()
def ddb():
    resource = boto3.resource(
        "dynamodb",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )
    with Stubber(resource.meta.client) as stub:
        yield DynamoDBStore(table_name=TABLE, resource=resource), stub
        stub.assert_no_pending_responses()


def _participant_item(pid: str, adjustment: int = 0) -> dict:
    return {
        "pk": {"S": "TRIP#t1"},
        "sk": {"S": f"PARTICIPANT#{pid}"},
        "id": {"S": pid},
        "pseudo": {"S": f"p_{pid}"},
        "role": {"S": "participant"},
        "manual_points_adjustment": {"N": str(adjustment)},
        "participant_key": {"S": "k"},
    }


def test_review_conflict_when_status_changed_concurrently(ddb):
    """条件付き書き込みが失敗したら既にレビュー済みとして扱う。"""

    store, stub = ddb
    stub.add_response(
        "get_item",
        {
            "Item": {
                "pk": {"S": "TRIP#t1"},
                "sk": {"S": "SUBMISSION#s1"},
                "id": {"S": "s1"},
                "trip_id": {"S": "t1"},
                "quest_id": {"S": "q1"},
                "submitter_id": {"S": "u1"},
                "status": {"S": "pending"},
                "points_awarded": {"N": "0"},
            }
        },
        {"TableName": TABLE, "Key": {"pk": "TRIP#t1", "sk": "SUBMISSION#s1"}},
    )
    stub.add_response(
        "get_item",
        {
            "Item": {
                "pk": {"S": "TRIP#t1"},
                "sk": {"S": "QUEST#q1"},
                "id": {"S": "q1"},
                "trip_id": {"S": "t1"},
                "creator_id": {"S": "org"},
                "creator_pseudo": {"S": "boss"},
                "title": {"S": "Find a tram"},
                "description": {"S": "Take a photo of tram 28"},
                "points": {"N": "25"},
                "created_at": {"S": "2026-05-01T10:00:00+00:00"},
                "is_active": {"BOOL": True},
            }
        },
        {"TableName": TABLE, "Key": {"pk": "TRIP#t1", "sk": "QUEST#q1"}},
    )
    stub.add_client_error(
        "put_item",
        service_error_code="ConditionalCheckFailedException",
        http_status_code=400,
        expected_params={"TableName": TABLE, "Item": ANY, "ConditionExpression": ANY},
    )

    with pytest.raises(ValueError):
        store.review_submission("t1", "s1", "org", "approved")


def test_adjust_points_uses_atomic_add(ddb):
    """手動調整は ADD で加算し、更新後の値を返す。"""

    store, stub = ddb
    stub.add_response(
        "update_item",
        {"Attributes": _participant_item("u1", adjustment=8)},
        {
            "TableName": TABLE,
            "Key": {"pk": "TRIP#t1", "sk": "PARTICIPANT#u1"},
            "ConditionExpression": ANY,
            "ReturnValues": "ALL_NEW",
            "UpdateExpression": (
                "ADD manual_points_adjustment :delta SET last_adjustment_reason = :reason"
            ),
            "ExpressionAttributeValues": {":delta": 3, ":reason": "bonus"},
        },
    )

    updated = store.adjust_participant_points("t1", "u1", 3, "bonus")
    assert updated.manual_points_adjustment == 8


def test_adjust_points_for_missing_participant(ddb):
    store, stub = ddb
    stub.add_client_error(
        "update_item", service_error_code="ConditionalCheckFailedException"
    )
    with pytest.raises(KeyError):
        store.adjust_participant_points("t1", "ghost", 1, None)


def test_list_participants_follows_pagination(ddb):
    """LastEvaluatedKey が返る間は続きを取得する。"""

    store, stub = ddb
    stub.add_response(
        "query",
        {
            "Items": [_participant_item("u1")],
            "LastEvaluatedKey": {"pk": {"S": "TRIP#t1"}, "sk": {"S": "PARTICIPANT#u1"}},
        },
        {"TableName": TABLE, "KeyConditionExpression": ANY},
    )
    stub.add_response(
        "query",
        {"Items": [_participant_item("u2", adjustment=-2)]},
        {
            "TableName": TABLE,
            "KeyConditionExpression": ANY,
            "ExclusiveStartKey": {"pk": "TRIP#t1", "sk": "PARTICIPANT#u1"},
        },
    )

    participants = store.list_participants("t1")
    assert [(p.id, p.manual_points_adjustment) for p in participants] == [("u1", 0), ("u2", -2)]


def test_create_trip_retries_taken_invite_code(ddb, monkeypatch):
    """招待コードが予約済みなら別のコードで取り直す。"""

    store, stub = ddb
    codes = iter(["AAAAAA", "BBBBBB"])
    monkeypatch.setattr(store_module, "generate_invite_code", lambda _length: next(codes))

    stub.add_client_error(
        "put_item",
        service_error_code="ConditionalCheckFailedException",
        expected_params={
            "TableName": TABLE,
            "Item": {"pk": "INVITE#AAAAAA", "sk": "META", "trip_id": ANY},
            "ConditionExpression": ANY,
        },
    )
    stub.add_response(
        "put_item",
        {},
        {
            "TableName": TABLE,
            "Item": {"pk": "INVITE#BBBBBB", "sk": "META", "trip_id": ANY},
            "ConditionExpression": ANY,
        },
    )
    stub.add_response("batch_write_item", {"UnprocessedItems": {}}, None)

    trip, organizer = store.create_trip(
        CreateTripRequest(user_id="org", pseudo="boss", name="Lisbon")
    )
    assert trip.invite_code == "BBBBBB"
    assert organizer.role == "organizer"


def test_join_trip_twice_is_rejected(ddb):
    store, stub = ddb
    stub.add_client_error(
        "put_item", service_error_code="ConditionalCheckFailedException"
    )
    with pytest.raises(ValueError):
        store.join_trip("t1", "u1", "ann", None)
