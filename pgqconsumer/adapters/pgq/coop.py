"""pgq_coop calls: several sub-consumers sharing one logical consumer."""
from datetime import timedelta
from typing import Optional, Union

from pgqconsumer.adapters.pgq.client import CallFailure, failed, log, query_scalar


def register_subconsumer(
    conn, queue_name: str, consumer_name: str, subconsumer_name: str
) -> Union[bool, CallFailure]:
    result = query_scalar(
        conn,
        "register_subconsumer",
        "SELECT pgq_coop.register_subconsumer(%s, %s, %s) AS registered;",
        (queue_name, consumer_name, subconsumer_name),
    )
    if failed(result):
        return result
    if result != 1:
        log.warning("Register subconsumer failed", extra={"consumer": consumer_name, "subconsumer": subconsumer_name, "result": result})
    return result == 1


def unregister_subconsumer(
    conn, queue_name: str, consumer_name: str, subconsumer_name: str, batch_handling: int = 0
) -> Union[bool, CallFailure]:
    """batch_handling=0 refuses to unregister while a batch is open."""
    result = query_scalar(
        conn,
        "unregister_subconsumer",
        "SELECT pgq_coop.unregister_subconsumer(%s, %s, %s, %s) AS unregistered;",
        (queue_name, consumer_name, subconsumer_name, batch_handling),
    )
    if failed(result):
        return result
    if result != 1:
        log.warning("Unregister subconsumer failed", extra={"consumer": consumer_name, "subconsumer": subconsumer_name, "result": result})
    return result == 1


def next_batch(
    conn,
    queue_name: str,
    consumer_name: str,
    subconsumer_name: str,
    timeout: Optional[timedelta] = None,
) -> Union[Optional[int], CallFailure]:
    """The timeout only bounds batch allocation, not event processing."""
    if timeout is None:
        sql = "SELECT pgq_coop.next_batch(%s, %s, %s) AS batch_id;"
        params: tuple = (queue_name, consumer_name, subconsumer_name)
    else:
        sql = "SELECT pgq_coop.next_batch(%s, %s, %s, %s) AS batch_id;"
        params = (queue_name, consumer_name, subconsumer_name, timeout)

    batch_id = query_scalar(conn, "coop_next_batch", sql, params)
    if failed(batch_id) or batch_id is None:
        return batch_id
    return int(batch_id)


def finish_batch(conn, batch_id: int) -> Union[bool, CallFailure]:
    result = query_scalar(conn, "coop_finish_batch", "SELECT pgq_coop.finish_batch(%s) AS finished;", (batch_id,))
    if failed(result):
        return result
    if result != 1:
        log.warning("finish_batch did not find the batch", extra={"batch_id": batch_id, "result": result})
    return result == 1
