"""Thin functions over the pgq SQL API.

Every call runs inside the caller's transaction and never commits. A call
that fails at the database level is logged and returns a ``CallFailure``
instead of raising, so "no data" (``None`` or an empty list) is never
confused with "could not ask". Nothing here retries.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union

import psycopg2

from pgqconsumer.domain.models.events import DEFAULT_RETRY_DELAY, Event
from pgqconsumer.utils.logging import configure_logging


log = configure_logging("pgq")


@dataclass(frozen=True)
class CallFailure:
    call: str
    error: str


def failed(result: Any) -> bool:
    return isinstance(result, CallFailure)


def query_rows(conn, call: str, sql: str, params: tuple = ()) -> Union[List[Dict[str, Any]], CallFailure]:
    log.debug(sql, extra={"params": params})
    try:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchall()
    except psycopg2.Error as exc:
        error = str(exc).strip()
        log.error("Queue call failed", extra={"call": call, "error": error})
        return CallFailure(call, error)


def query_scalar(conn, call: str, sql: str, params: tuple = ()) -> Union[Any, CallFailure]:
    rows = query_rows(conn, call, sql, params)
    if failed(rows):
        return rows
    if not rows:
        return None
    return next(iter(rows[0].values()))


def create_queue(conn, queue_name: str) -> Union[bool, CallFailure]:
    result = query_scalar(conn, "create_queue", "SELECT pgq.create_queue(%s) AS created;", (queue_name,))
    if failed(result):
        return result
    if result != 1:
        log.error("Could not create queue", extra={"queue": queue_name, "result": result})
    return result == 1


def drop_queue(conn, queue_name: str) -> Union[bool, CallFailure]:
    result = query_scalar(conn, "drop_queue", "SELECT pgq.drop_queue(%s) AS dropped;", (queue_name,))
    if failed(result):
        return result
    return result == 1


def get_queue_info(conn) -> Union[List[Dict[str, Any]], CallFailure]:
    return query_rows(conn, "get_queue_info", "SELECT * FROM pgq.get_queue_info();")


def queue_exists(conn, queue_name: str) -> Union[bool, CallFailure]:
    queues = get_queue_info(conn)
    if failed(queues):
        return queues
    return any(row["queue_name"] == queue_name for row in queues)


def register_consumer(conn, queue_name: str, consumer_name: str) -> Union[bool, CallFailure]:
    result = query_scalar(
        conn,
        "register_consumer",
        "SELECT pgq.register_consumer(%s, %s) AS registered;",
        (queue_name, consumer_name),
    )
    if failed(result):
        return result
    if result != 1:
        log.warning("Register consumer failed", extra={"queue": queue_name, "consumer": consumer_name, "result": result})
    return result == 1


def unregister_consumer(conn, queue_name: str, consumer_name: str) -> Union[bool, CallFailure]:
    result = query_scalar(
        conn,
        "unregister_consumer",
        "SELECT pgq.unregister_consumer(%s, %s) AS unregistered;",
        (queue_name, consumer_name),
    )
    if failed(result):
        return result
    if result != 1:
        log.warning("Unregister consumer failed", extra={"queue": queue_name, "consumer": consumer_name, "result": result})
    return result == 1


def get_consumer_info(conn, queue_name: str, consumer_name: str) -> Union[Optional[Dict[str, Any]], CallFailure]:
    rows = query_rows(
        conn,
        "get_consumer_info",
        "SELECT * FROM pgq.get_consumer_info(%s, %s);",
        (queue_name, consumer_name),
    )
    if failed(rows):
        return rows
    if len(rows) != 1:
        log.warning("Consumer info did not get 1 row", extra={"queue": queue_name, "consumer": consumer_name, "rows": len(rows)})
        return None
    return dict(rows[0])


def get_consumers(conn, queue_name: str) -> Union[List[Dict[str, Any]], CallFailure]:
    rows = query_rows(conn, "get_consumers", "SELECT * FROM pgq.get_consumer_info(%s);", (queue_name,))
    if failed(rows):
        return rows
    return [dict(row) for row in rows]


def is_registered(conn, queue_name: str, consumer_name: str) -> Union[bool, CallFailure]:
    info = get_consumer_info(conn, queue_name, consumer_name)
    if failed(info):
        return info
    if info is None:
        return False
    registered = info.get("queue_name") == queue_name and info.get("consumer_name") == consumer_name
    log.debug("is_registered", extra={"consumer": consumer_name, "registered": registered})
    return registered


def next_batch(conn, queue_name: str, consumer_name: str) -> Union[Optional[int], CallFailure]:
    """Allocate the next batch; None means there is nothing to do yet."""
    batch_id = query_scalar(
        conn,
        "next_batch",
        "SELECT pgq.next_batch(%s, %s) AS batch_id;",
        (queue_name, consumer_name),
    )
    if failed(batch_id) or batch_id is None:
        return batch_id
    return int(batch_id)


def get_batch_events(
    conn, batch_id: int, retry_delay: timedelta = DEFAULT_RETRY_DELAY
) -> Union[List[Event], CallFailure]:
    rows = query_rows(conn, "get_batch_events", "SELECT * FROM pgq.get_batch_events(%s);", (batch_id,))
    if failed(rows):
        return rows
    return [Event.from_row(row, retry_delay) for row in rows]


def event_failed(conn, batch_id: int, event_id: int, reason: str) -> Union[bool, CallFailure]:
    result = query_scalar(
        conn,
        "event_failed",
        "SELECT pgq.event_failed(%s, %s, %s) AS tagged;",
        (batch_id, event_id, reason),
    )
    if failed(result):
        return result
    return True


def event_retry(conn, batch_id: int, event_id: int, retry_seconds: int) -> Union[bool, CallFailure]:
    result = query_scalar(
        conn,
        "event_retry",
        "SELECT pgq.event_retry(%s, %s, %s) AS tagged;",
        (batch_id, event_id, retry_seconds),
    )
    if failed(result):
        return result
    return True


def finish_batch(conn, batch_id: int) -> Union[bool, CallFailure]:
    result = query_scalar(conn, "finish_batch", "SELECT pgq.finish_batch(%s) AS finished;", (batch_id,))
    if failed(result):
        return result
    if result != 1:
        log.warning("finish_batch did not find the batch", extra={"batch_id": batch_id, "result": result})
    return result == 1


def maint_retry_events(conn) -> Union[int, CallFailure]:
    """Move due events from the retry queue back into the live queue."""
    count = query_scalar(conn, "maint_retry_events", "SELECT pgq.maint_retry_events() AS moved;")
    if failed(count):
        return count
    return int(count or 0)


def failed_event_list(conn, queue_name: str, consumer_name: str) -> Union[List[Event], CallFailure]:
    rows = query_rows(
        conn,
        "failed_event_list",
        "SELECT * FROM pgq.failed_event_list(%s, %s);",
        (queue_name, consumer_name),
    )
    if failed(rows):
        return rows
    return [Event.from_row(row) for row in rows]


def failed_event_delete(conn, queue_name: str, consumer_name: str, event_id: int) -> Union[bool, CallFailure]:
    rows = query_rows(
        conn,
        "failed_event_delete",
        "SELECT pgq.failed_event_delete(%s, %s, %s) AS deleted;",
        (queue_name, consumer_name, event_id),
    )
    if failed(rows):
        return rows
    if len(rows) != 1:
        log.warning("failed_event_delete did not get 1 row", extra={"event_id": event_id})
        return False
    return True


def failed_event_retry(conn, queue_name: str, consumer_name: str, event_id: int) -> Union[bool, CallFailure]:
    rows = query_rows(
        conn,
        "failed_event_retry",
        "SELECT pgq.failed_event_retry(%s, %s, %s) AS retried;",
        (queue_name, consumer_name, event_id),
    )
    if failed(rows):
        return rows
    if len(rows) != 1:
        log.warning("failed_event_retry did not get 1 row", extra={"event_id": event_id})
        return False
    return True


def failed_event_delete_all(conn, queue_name: str, consumer_name: str) -> Union[bool, CallFailure]:
    events = failed_event_list(conn, queue_name, consumer_name)
    if failed(events):
        return events
    for event in events:
        result = failed_event_delete(conn, queue_name, consumer_name, event.id)
        if result is not True:
            return result
    return True


def failed_event_retry_all(conn, queue_name: str, consumer_name: str) -> Union[bool, CallFailure]:
    events = failed_event_list(conn, queue_name, consumer_name)
    if failed(events):
        return events
    for event in events:
        result = failed_event_retry(conn, queue_name, consumer_name, event.id)
        if result is not True:
            return result
    return True
