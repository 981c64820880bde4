"""Verify PureCloud client credentials before scheduling the queue stats sync."""

from __future__ import annotations

import argparse
import json
import os

from dotenv import load_dotenv

from ingestion.tasks.ingest_queue_interval_stats import (
    DEFAULT_REGION,
    _api_get_json,
    _request_client_credentials_token,
)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Log into PureCloud with client credentials and list one page of queues."
    )
    parser.add_argument(
        "--region",
        default=os.getenv("PURECLOUD_REGION", DEFAULT_REGION),
        help="PureCloud region domain, for example mypurecloud.com or mypurecloud.ie.",
    )
    parser.add_argument(
        "--client-id",
        default=os.getenv("PURECLOUD_CLIENT_ID", ""),
        help="OAuth client id (client credentials grant).",
    )
    parser.add_argument(
        "--client-secret",
        default=os.getenv("PURECLOUD_CLIENT_SECRET", ""),
        help="OAuth client secret.",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    load_dotenv()
    args = _build_parser().parse_args(argv)
    if not args.client_id:
        raise ValueError("Missing client id. Set PURECLOUD_CLIENT_ID or pass --client-id.")
    if not args.client_secret:
        raise ValueError("Missing client secret. Set PURECLOUD_CLIENT_SECRET or pass --client-secret.")

    token_payload = _request_client_credentials_token(
        region=args.region, client_id=args.client_id, client_secret=args.client_secret
    )
    access_token = token_payload.get("access_token", "")
    if not access_token:
        raise RuntimeError("No access_token returned. Check the OAuth client grant type.")

    queues_page = _api_get_json(
        access_token=str(access_token),
        region=args.region,
        path="routing/queues",
        params={"pageSize": "1", "pageNumber": "1"},
    )

    output = {
        "status": "ok",
        "region": args.region,
        "token_response_subset": {
            "token_type": token_payload.get("token_type"),
            "expires_in": token_payload.get("expires_in"),
        },
        "queue_total": queues_page.get("total"),
    }
    print("PureCloud login succeeded.\n")
    print(json.dumps(output, indent=2))


if __name__ == "__main__":
    main()
