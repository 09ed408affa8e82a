from __future__ import annotations

import boto3
import structlog

from tripquest.config import load_settings
from tripquest.logging_setup import configure_logging

log = structlog.get_logger(__name__)


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level)
    table_name = settings.ddb_table_name
    if not table_name:
        raise SystemExit("DDB_TABLE_NAME is required")

    ddb = boto3.client("dynamodb")
    existing = ddb.list_tables().get("TableNames", [])
    if table_name in existing:
        log.info("table_exists", table_name=table_name)
        return

    # TRIP#{id} 配下に META / PARTICIPANT# / QUEST# / SUBMISSION#、招待コードは INVITE#{code}、参加一覧は USER#{uid} / TRIP#{tid}
    ddb.create_table(
        TableName=table_name,
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
        ],
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},
            {"AttributeName": "sk", "KeyType": "RANGE"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    ddb.get_waiter("table_exists").wait(TableName=table_name)
    log.info("table_created", table_name=table_name)


if __name__ == "__main__":
    main()
