"""Sync PureCloud queue interval statistics into a relational table."""

from __future__ import annotations

import argparse
import json
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable
from urllib.parse import quote_plus

import requests
from dotenv import load_dotenv
from sqlalchemy import (
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine

DEFAULT_REGION = "mypurecloud.com"
DEFAULT_GRANULARITY = "PT30M"
DEFAULT_MEDIA_TYPES = ("voice", "chat", "email")
DEFAULT_QUEUE_PAGE_SIZE = 100
DEFAULT_ODBC_DIALECT = "mssql"
QUEUE_STATS_TABLE_NAME = "QueueIntervalStats"
QUEUE_INDEX_NAME = "QueueIndex"
INTERVAL_FORMAT = "%Y-%m-%dT%H:%M:%S%z"
RFC3339_PATTERN = re.compile(
    r"^(\d{4}-\d{2}-\d{2})[Tt](\d{2}:\d{2}:\d{2})(\.\d+)?([Zz]|[+-]\d{2}:\d{2})$"
)
ODBC_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

SUPPORTED_GRANULARITY = {
    "PT15M": timedelta(minutes=15),
    "PT30M": timedelta(minutes=30),
    "PT60M": timedelta(hours=1),
    "PT1H": timedelta(hours=1),
    "P1D": timedelta(hours=24),
}
SUPPORTED_MEDIA_TYPES = ("voice", "chat", "email", "callback", "message")
MISSING_GROUP_POLICIES = ("skip", "error")

# Metrics reported as a plain count.
COUNT_METRICS = (
    "nError",
    "nOffered",
    "nOutboundAbandoned",
    "nOutboundAttempted",
    "nOutboundConnected",
    "nTransferred",
    "nOverSla",
)
# Metrics reported as sum/max/count; stored as t<X>, mt<X>, n<X>.
TIMED_METRICS = (
    "tAbandon",
    "tAcd",
    "tAcw",
    "tAgentResponseTime",
    "tAnswered",
    "tHandle",
    "tHeld",
    "tHeldComplete",
    "tIvr",
    "tTalk",
    "tTalkComplete",
    "tUserResponseTime",
)
KEY_COLUMNS = ("QueueID", "MediaType", "Interval")


def _metric_columns() -> list[Column]:
    columns = [Column(name, Integer, nullable=False, default=0) for name in COUNT_METRICS]
    for name in TIMED_METRICS:
        suffix = name[1:]
        columns.extend(
            [
                Column(name, Float, nullable=False, default=0.0),
                Column(f"mt{suffix}", Float, nullable=False, default=0.0),
                Column(f"n{suffix}", Integer, nullable=False, default=0),
            ]
        )
    return columns


METADATA = MetaData()
QUEUE_STATS_TABLE = Table(
    QUEUE_STATS_TABLE_NAME,
    METADATA,
    Column("QueueID", String(64), nullable=False),
    Column("QueueName", String(255)),
    Column("MediaType", String(32), nullable=False),
    Column("Interval", DateTime, nullable=False),
    *_metric_columns(),
    Index(QUEUE_INDEX_NAME, "QueueID", "MediaType", "Interval", unique=True),
)
QUEUE_STATS_COLUMNS = tuple(column.name for column in QUEUE_STATS_TABLE.columns)
METRIC_DEFAULTS: dict[str, Any] = {
    column.name: 0.0 if isinstance(column.type, Float) else 0
    for column in QUEUE_STATS_TABLE.columns
    if column.name not in KEY_COLUMNS and column.name != "QueueName"
}


class QueueStatsShapeError(ValueError):
    """Aggregate response does not match the QueueIntervalStats layout."""


class UnrecognizedMetricError(QueueStatsShapeError):
    def __init__(self, metric: str) -> None:
        super().__init__(f"Unrecognized metric {metric!r} in aggregate response.")
        self.metric = metric


class MalformedIntervalError(QueueStatsShapeError):
    def __init__(self, interval: Any) -> None:
        super().__init__(f"Could not parse interval {interval!r} as an RFC 3339 start/end pair.")
        self.interval = interval


class MissingGroupError(QueueStatsShapeError):
    def __init__(self, group: Any) -> None:
        super().__init__(f"Aggregate result is missing queueId or mediaType: {group!r}")
        self.group = group


@dataclass(frozen=True)
class SyncConfig:
    region: str
    client_id: str
    client_secret: str
    database_url: str
    granularity: str = DEFAULT_GRANULARITY
    queues: tuple[str, ...] = ()
    media_types: tuple[str, ...] = DEFAULT_MEDIA_TYPES
    missing_group_policy: str = "skip"
    queue_page_size: int = DEFAULT_QUEUE_PAGE_SIZE
    dry_run: bool = False


@dataclass
class FlattenedStats:
    rows: list[dict[str, Any]] = field(default_factory=list)
    skipped_results: int = 0


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Upsert PureCloud queue interval statistics into a database table."
    )
    parser.add_argument(
        "config_file",
        nargs="?",
        default=os.getenv("QUEUE_STATS_CONFIG_FILE", ""),
        help="Optional JSON config file (pureCloudRegion, pureCloudClientId, odbcDsn, ...).",
    )
    parser.add_argument("--region", default=os.getenv("PURECLOUD_REGION", ""))
    parser.add_argument("--client-id", default=os.getenv("PURECLOUD_CLIENT_ID", ""))
    parser.add_argument("--client-secret", default=os.getenv("PURECLOUD_CLIENT_SECRET", ""))
    parser.add_argument(
        "--database-url",
        default=os.getenv("QUEUE_STATS_DATABASE_URL", ""),
        help="SQLAlchemy database URL. Takes precedence over --odbc-dsn.",
    )
    parser.add_argument("--odbc-dsn", default=os.getenv("QUEUE_STATS_ODBC_DSN", ""))
    parser.add_argument(
        "--odbc-dialect",
        default=os.getenv("QUEUE_STATS_ODBC_DIALECT", ""),
        help="SQLAlchemy dialect used with --odbc-dsn (default mssql).",
    )
    parser.add_argument("--granularity", default=os.getenv("QUEUE_STATS_GRANULARITY", ""))
    parser.add_argument(
        "--queues",
        default=os.getenv("PURECLOUD_QUEUES", ""),
        help="Comma-separated queue ids. Empty means every queue in the org.",
    )
    parser.add_argument("--media-types", default=os.getenv("PURECLOUD_MEDIA_TYPES", ""))
    parser.add_argument(
        "--missing-group-policy",
        default=os.getenv("QUEUE_STATS_MISSING_GROUP_POLICY", ""),
        help="What to do with results lacking queueId or mediaType: skip or error.",
    )
    parser.add_argument(
        "--queue-page-size",
        default=os.getenv("PURECLOUD_QUEUE_PAGE_SIZE", ""),
        help="Queues requested per page of the routing/queues listing (default 100).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the INSERT statements instead of writing to the database.",
    )
    return parser.parse_args(argv)


def _require(name: str, value: str) -> str:
    if not value:
        raise ValueError(f"{name} is required. Provide arg, set it in .env or in the config file.")
    return value


def _split_csv(value: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


def _as_str_tuple(value: Any, name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return _split_csv(value)
    if not isinstance(value, list):
        raise ValueError(f"{name} must be a list of strings. Got {type(value).__name__}.")
    return tuple(str(item).strip() for item in value if str(item).strip())


def _as_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be an integer. Got {value!r}.")
    try:
        return int(str(value).strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer. Got {value!r}.") from exc


def _read_config_file(path: str) -> dict[str, Any]:
    if not path:
        return {}
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    payload = json.loads(config_path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError(f"Config file must contain a JSON object. Got {type(payload).__name__}.")
    return payload


def build_database_url(*, database_url: str, odbc_dsn: str, odbc_dialect: str = "") -> str:
    if database_url:
        return database_url
    if not odbc_dsn:
        return ""
    dialect = odbc_dialect or DEFAULT_ODBC_DIALECT
    return f"{dialect}+pyodbc:///?odbc_connect={quote_plus(f'DSN={odbc_dsn}')}"


def _load_config(args: argparse.Namespace) -> SyncConfig:
    file_values = _read_config_file(args.config_file)

    def _file_str(key: str) -> str:
        return str(file_values.get(key, "") or "").strip()

    region = (args.region or _file_str("pureCloudRegion") or DEFAULT_REGION).strip().rstrip("/")
    client_id = _require("client-id", args.client_id or _file_str("pureCloudClientId"))
    client_secret = _require("client-secret", args.client_secret or _file_str("pureCloudClientSecret"))

    database_url = build_database_url(
        database_url=args.database_url or _file_str("databaseUrl"),
        odbc_dsn=args.odbc_dsn or _file_str("odbcDsn"),
        odbc_dialect=args.odbc_dialect or _file_str("odbcDialect"),
    )
    if not args.dry_run:
        _require("database-url or odbc-dsn", database_url)

    granularity = args.granularity or _file_str("granularity") or DEFAULT_GRANULARITY
    if granularity not in SUPPORTED_GRANULARITY:
        raise ValueError(
            f"Invalid granularity {granularity!r}. Use PT15M, PT30M, PT60M, PT1H or P1D."
        )

    queues = _split_csv(args.queues) if args.queues else _as_str_tuple(file_values.get("queues"), "queues")

    if args.media_types:
        media_types = _split_csv(args.media_types)
    else:
        media_types = _as_str_tuple(file_values.get("mediaTypes"), "mediaTypes") or DEFAULT_MEDIA_TYPES
    unsupported = [m for m in media_types if m not in SUPPORTED_MEDIA_TYPES]
    if unsupported:
        raise ValueError(
            f"Unsupported media type(s) {unsupported}. Use one of {', '.join(SUPPORTED_MEDIA_TYPES)}."
        )

    policy = args.missing_group_policy or _file_str("missingGroupPolicy") or "skip"
    if policy not in MISSING_GROUP_POLICIES:
        raise ValueError(f"missing-group-policy must be skip or error. Got {policy!r}.")

    page_size = _as_int(
        args.queue_page_size or file_values.get("queuePageSize") or DEFAULT_QUEUE_PAGE_SIZE,
        "queue-page-size",
    )
    if page_size <= 0:
        raise ValueError("queue-page-size must be greater than 0.")

    return SyncConfig(
        region=region,
        client_id=client_id,
        client_secret=client_secret,
        database_url=database_url,
        granularity=granularity,
        queues=queues,
        media_types=media_types,
        missing_group_policy=policy,
        queue_page_size=page_size,
        dry_run=bool(args.dry_run),
    )


def _resolve_interval(granularity: str, now: datetime | None = None) -> tuple[datetime, datetime]:
    if granularity not in SUPPORTED_GRANULARITY:
        raise ValueError(f"Invalid granularity {granularity!r}.")
    if now is None:
        now = datetime.now().astimezone()
    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware.")

    duration = SUPPORTED_GRANULARITY[granularity]
    if granularity == "P1D":
        start = _local_midnight(now)
    else:
        step = int(duration.total_seconds())
        epoch_seconds = int(now.timestamp())
        start = datetime.fromtimestamp(epoch_seconds - epoch_seconds % step, tz=now.tzinfo)
    # Absolute span: a changeover day still ends 24 hours after it starts.
    end = (start.astimezone(timezone.utc) + duration).astimezone(start.tzinfo)
    return start, end


def _local_midnight(now: datetime) -> datetime:
    midnight = datetime.combine(now.date(), time.min)
    if isinstance(now.tzinfo, timezone) and now.utcoffset() == now.astimezone().utcoffset():
        # A fixed offset from astimezone() is today's offset, not necessarily midnight's.
        return midnight.astimezone()
    if isinstance(now.tzinfo, timezone):
        return midnight.replace(tzinfo=now.tzinfo)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _format_interval(start: datetime, end: datetime) -> str:
    return f"{start.strftime(INTERVAL_FORMAT)}/{end.strftime(INTERVAL_FORMAT)}"


def _build_aggregate_query(
    *,
    interval: str,
    granularity: str,
    media_types: Iterable[str],
    queue_ids: Iterable[str],
) -> dict[str, Any]:
    queue_ids = list(queue_ids)
    if not queue_ids:
        raise ValueError("At least one queue id is required to build the aggregate query.")
    return {
        "interval": interval,
        "granularity": granularity,
        "groupBy": ["mediaType", "queueId"],
        "filter": {
            "type": "and",
            "clauses": [
                {
                    "type": "or",
                    "predicates": [
                        {"dimension": "mediaType", "value": media_type} for media_type in media_types
                    ],
                },
                {
                    "type": "or",
                    "predicates": [{"dimension": "queueId", "value": queue_id} for queue_id in queue_ids],
                },
            ],
        },
        "flattenMultivaluedDimensions": True,
    }


def _request_client_credentials_token(*, region: str, client_id: str, client_secret: str) -> dict[str, Any]:
    response = requests.post(
        f"https://login.{region}/oauth/token",
        data={"grant_type": "client_credentials"},
        auth=(client_id, client_secret),
        timeout=30,
    )
    response.raise_for_status()
    return response.json()


def _login_client_credentials(*, region: str, client_id: str, client_secret: str) -> str:
    payload = _request_client_credentials_token(
        region=region, client_id=client_id, client_secret=client_secret
    )
    access_token = payload.get("access_token", "")
    if not access_token:
        raise RuntimeError("PureCloud login succeeded but access_token was missing.")
    return str(access_token)


def _api_get_json(*, access_token: str, region: str, path: str, params: dict[str, str]) -> dict:
    response = requests.get(
        f"https://api.{region}/api/v2/{path}",
        params=params,
        headers={"Authorization": f"Bearer {access_token}"},
        timeout=60,
    )
    response.raise_for_status()
    return response.json()


def _api_post_json(*, access_token: str, region: str, path: str, body: dict[str, Any]) -> dict:
    response = requests.post(
        f"https://api.{region}/api/v2/{path}",
        json=body,
        headers={"Authorization": f"Bearer {access_token}"},
        timeout=60,
    )
    response.raise_for_status()
    return response.json()


def _fetch_queue_names(*, access_token: str, region: str, page_size: int) -> dict[str, str]:
    queues: dict[str, str] = {}
    page_number = 1

    while True:
        page_payload = _api_get_json(
            access_token=access_token,
            region=region,
            path="routing/queues",
            params={"pageSize": str(page_size), "pageNumber": str(page_number)},
        )
        entities = page_payload.get("entities", [])
        if not isinstance(entities, list) or not entities:
            break
        for queue in entities:
            queue_id = str(queue.get("id", "") or "")
            if queue_id:
                queues[queue_id] = str(queue.get("name", "") or "")

        page_count = int(page_payload.get("pageCount", 0) or 0)
        if page_number >= page_count:
            break
        page_number += 1

    return queues


def _query_conversation_aggregates(*, access_token: str, region: str, query: dict[str, Any]) -> dict:
    return _api_post_json(
        access_token=access_token,
        region=region,
        path="analytics/conversations/aggregates/query",
        body=query,
    )


def _parse_interval_start(interval: Any) -> datetime:
    if not isinstance(interval, str) or not interval.strip():
        raise MalformedIntervalError(interval)
    match = RFC3339_PATTERN.match(interval.split("/", 1)[0].strip())
    if not match:
        raise MalformedIntervalError(interval)
    date_part, time_part, fraction, offset = match.groups()
    try:
        parsed = datetime.strptime(f"{date_part}T{time_part}", "%Y-%m-%dT%H:%M:%S")
        if fraction:
            parsed = parsed.replace(microsecond=int(fraction[1:7].ljust(6, "0")))
        if offset.upper() == "Z":
            tzinfo = timezone.utc
        else:
            sign = -1 if offset[0] == "-" else 1
            tzinfo = timezone(sign * timedelta(hours=int(offset[1:3]), minutes=int(offset[4:6])))
    except ValueError as exc:
        raise MalformedIntervalError(interval) from exc
    parsed = parsed.replace(tzinfo=tzinfo)
    # Stored naive in UTC; DATETIME columns carry no offset on most drivers.
    return parsed.astimezone(timezone.utc).replace(tzinfo=None)


def _apply_metric(row: dict[str, Any], metric: dict[str, Any]) -> None:
    name = str(metric.get("metric", "") or "")
    stats = metric.get("stats") or {}
    if name in COUNT_METRICS:
        row[name] = int(stats.get("count", 0) or 0)
    elif name in TIMED_METRICS:
        suffix = name[1:]
        row[name] = float(stats.get("sum", 0) or 0)
        row[f"mt{suffix}"] = float(stats.get("max", 0) or 0)
        row[f"n{suffix}"] = int(stats.get("count", 0) or 0)
    else:
        raise UnrecognizedMetricError(name)


def flatten_queue_stats(
    response: dict[str, Any],
    queue_names: dict[str, str],
    *,
    missing_group_policy: str = "skip",
) -> FlattenedStats:
    """Turn an aggregate query response into one row per queue, media type and interval.

    Rows are keyed by QueueIntervalStats column name. Metrics missing from an
    interval bucket stay at zero; metrics the table has no column for raise
    UnrecognizedMetricError so that API drift is noticed instead of dropped.
    """
    if missing_group_policy not in MISSING_GROUP_POLICIES:
        raise ValueError(f"missing_group_policy must be skip or error. Got {missing_group_policy!r}.")

    flattened = FlattenedStats()
    for result in response.get("results", []) or []:
        group = result.get("group") or {}
        queue_id = str(group.get("queueId", "") or "")
        media_type = str(group.get("mediaType", "") or "")
        if not queue_id or not media_type:
            # Conversations that never entered a queue come back without a group.
            if missing_group_policy == "error":
                raise MissingGroupError(group)
            flattened.skipped_results += 1
            continue

        queue_name = queue_names.get(queue_id) or queue_id
        for bucket in result.get("data", []) or []:
            row: dict[str, Any] = {
                "QueueID": queue_id,
                "QueueName": queue_name,
                "MediaType": media_type,
                "Interval": _parse_interval_start(bucket.get("interval")),
                **METRIC_DEFAULTS,
            }
            for metric in bucket.get("metrics", []) or []:
                _apply_metric(row, metric)
            flattened.rows.append(row)

    return flattened


def prepare_table(engine: Engine) -> None:
    METADATA.create_all(engine, tables=[QUEUE_STATS_TABLE], checkfirst=True)


def _key_criteria(row: dict[str, Any]) -> list:
    return [QUEUE_STATS_TABLE.c[name] == row[name] for name in KEY_COLUMNS]


def _queue_interval_exists(conn: Connection, row: dict[str, Any]) -> bool:
    stmt = select(QUEUE_STATS_TABLE.c.QueueID).where(*_key_criteria(row)).limit(1)
    return conn.execute(stmt).first() is not None


def write_queue_stats(conn: Connection, rows: Iterable[dict[str, Any]]) -> dict[str, int]:
    """Upsert rows by (QueueID, MediaType, Interval), one existence check per row."""
    counts = {"inserted": 0, "updated": 0}
    for row in rows:
        if _queue_interval_exists(conn, row):
            values = {name: row[name] for name in QUEUE_STATS_COLUMNS if name not in KEY_COLUMNS}
            conn.execute(update(QUEUE_STATS_TABLE).where(*_key_criteria(row)).values(values))
            counts["updated"] += 1
        else:
            conn.execute(insert(QUEUE_STATS_TABLE).values({name: row[name] for name in QUEUE_STATS_COLUMNS}))
            counts["inserted"] += 1
    return counts


def _escape_sql_string(value: str) -> str:
    return value.replace("'", "''")


def _sql_literal(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, datetime):
        return f"{{ts '{value.strftime(ODBC_TIMESTAMP_FORMAT)}'}}"
    if isinstance(value, float):
        return f"{value:f}"
    if isinstance(value, int):
        return str(value)
    return f"'{_escape_sql_string(str(value))}'"


def _render_insert_sql(row: dict[str, Any]) -> str:
    columns = ", ".join(QUEUE_STATS_COLUMNS)
    values = ", ".join(_sql_literal(row[name]) for name in QUEUE_STATS_COLUMNS)
    return f"INSERT INTO {QUEUE_STATS_TABLE_NAME} ({columns}) VALUES ({values});"


def main(argv: list[str] | None = None) -> None:
    load_dotenv()
    args = _parse_args(argv)
    config = _load_config(args)

    start, end = _resolve_interval(config.granularity)
    interval = _format_interval(start, end)

    engine: Engine | None = None
    if not config.dry_run:
        engine = create_engine(config.database_url, future=True)

    try:
        if engine is not None:
            prepare_table(engine)

        print("Logging into PureCloud...")
        access_token = _login_client_credentials(
            region=config.region,
            client_id=config.client_id,
            client_secret=config.client_secret,
        )
        print("Successfully logged in.")

        print("Retrieving list of configured queues...")
        queue_names = _fetch_queue_names(
            access_token=access_token,
            region=config.region,
            page_size=config.queue_page_size,
        )
        print(f"Mapped {len(queue_names)} queues")

        queue_ids = list(config.queues) or sorted(queue_names)
        query = _build_aggregate_query(
            interval=interval,
            granularity=config.granularity,
            media_types=config.media_types,
            queue_ids=queue_ids,
        )
        print(f"Querying conversation aggregates for {interval} ...")
        response = _query_conversation_aggregates(
            access_token=access_token, region=config.region, query=query
        )
        flattened = flatten_queue_stats(
            response, queue_names, missing_group_policy=config.missing_group_policy
        )

        counts = {"inserted": 0, "updated": 0}
        if engine is None:
            for row in flattened.rows:
                print(_render_insert_sql(row))
        else:
            print(f"Writing {len(flattened.rows)} rows to {QUEUE_STATS_TABLE_NAME} ...")
            with engine.begin() as conn:
                counts = write_queue_stats(conn, flattened.rows)
    finally:
        if engine is not None:
            engine.dispose()

    print(
        json.dumps(
            {
                "status": "ok",
                "dry_run": config.dry_run,
                "table": QUEUE_STATS_TABLE_NAME,
                "interval": interval,
                "granularity": config.granularity,
                "queue_count": len(queue_ids),
                "media_types": list(config.media_types),
                "row_count": len(flattened.rows),
                "inserted": counts["inserted"],
                "updated": counts["updated"],
                "skipped_results": flattened.skipped_results,
            },
            indent=2,
        )
    )


if __name__ == "__main__":
    main()
