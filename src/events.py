import json
from datetime import datetime, timezone


def utc_ts(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def log_json(event: str, **fields: object) -> None:
    payload = {
        "ts_utc": utc_ts(datetime.now(timezone.utc)),
        "event": event,
        **fields,
    }
    print(json.dumps(payload, ensure_ascii=False, default=str), flush=True)
