"""Utility script to seed demo users and products into the DynamoDB store."""

from __future__ import annotations

import argparse
import os

import boto3

import state


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed demo accounts and catalog into a DynamoDB table")
    parser.add_argument("--table", dest="table_name", default=os.getenv("DDB_TABLE"))
    parser.add_argument("--region", default=os.getenv("AWS_REGION", "us-east-1"))
    parser.add_argument(
        "--create-table",
        action="store_true",
        help="Create the pk/sk table (on-demand billing) if it does not exist",
    )
    args = parser.parse_args()

    if not args.table_name:
        raise SystemExit("Set DDB_TABLE or pass --table before running the script")

    dynamodb = boto3.session.Session(region_name=args.region).resource("dynamodb")
    existing = {table.name for table in dynamodb.tables.all()}
    if args.table_name not in existing:
        if not args.create_table:
            raise SystemExit(f"Table {args.table_name} does not exist; rerun with --create-table")
        print(f"Creating table {args.table_name} ...")
        table = dynamodb.create_table(
            TableName=args.table_name,
            KeySchema=[
                {"AttributeName": "pk", "KeyType": "HASH"},
                {"AttributeName": "sk", "KeyType": "RANGE"},
            ],
            AttributeDefinitions=[
                {"AttributeName": "pk", "AttributeType": "S"},
                {"AttributeName": "sk", "AttributeType": "S"},
            ],
            BillingMode="PAY_PER_REQUEST",
        )
        table.wait_until_exists()

    store = state.DynamoStore(table=dynamodb.Table(args.table_name))
    store.seed_demo_data()
    print(
        f"Done. Users: {len(state.DEMO_USERS)} demo accounts present, "
        f"products in catalog: {len(store.list_products())}"
    )


if __name__ == "__main__":
    main()
