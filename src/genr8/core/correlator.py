"""Correlation of asynchronous provider callbacks.

Providers report job completion out of band by POSTing to the callback
endpoint.  The correlator stores the latest payload per provider correlation
id so a polling client, going through the orchestrator, can pick it up.

Payload Shapes
--------------
Providers do not agree on a callback format.  :func:`parse_callback`
understands:

Flat form::

    {"correlationId": "abc123", "status": "done", "result": "https://cdn/x.mp4"}

Jobs API envelope (``resultJson`` is a JSON *string*)::

    {"code": 200, "data": {"taskId": "abc123", "state": "success",
                           "resultJson": "{\\"resultUrls\\": [\\"https://...\\"]}"}}

Veo / 4o envelope::

    {"code": 200, "data": {"taskId": "abc123", "successFlag": 1,
                           "response": {"resultUrls": ["https://..."]}}}

Record Semantics
----------------
- One record per correlation id.  A repeat callback (progress then final)
  replaces the stored payload; both calls succeed.
- Last write wins by receipt timestamp: a payload stamped earlier than the
  stored one is counted but does not overwrite it.
- Orphan callbacks (ids no request knows about) are stored like any other.
- Records expire after the configured TTL.  A miss after expiry looks exactly
  like "not arrived yet"; the orchestrator's state machine, not the absence
  of a record, decides between "still pending" and "gone".
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from genr8.core.errors import CallbackNotFoundError, MalformedCallbackError
from genr8.core.models import CallbackRecord, CallbackStatus, Clock, utc_now
from genr8.core.store import InMemoryKeyedStore, KeyedStore

logger = logging.getLogger(__name__)

_SUCCESS_STATES = {"done", "success", "succeeded", "successful", "completed", "complete", "finished"}
_FAILED_STATES = {
    "fail",
    "failed",
    "failure",
    "error",
    "errored",
    "cancelled",
    "canceled",
    "create_task_failed",
    "generate_failed",
}
_CONTENT_POLICY_MARKERS = ("content", "policy", "violation", "flagged")


@dataclass(frozen=True)
class ParsedCallback:
    """Provider-neutral reading of a callback payload."""

    correlation_id: str | None
    status: CallbackStatus
    result_urls: list[str] = field(default_factory=list)
    failure_detail: str | None = None
    content_policy: bool = False

    @property
    def result(self) -> str | None:
        return self.result_urls[0] if self.result_urls else None


def _first(*values: Any) -> Any:
    for value in values:
        if value not in (None, ""):
            return value
    return None


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _url_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        return [v for v in value if isinstance(v, str) and v.strip()]
    return []


def _normalise_status(payload: dict, data: dict) -> CallbackStatus:
    flag = _first(data.get("successFlag"), payload.get("successFlag"))
    if flag is not None:
        try:
            flag = int(flag)
        except (TypeError, ValueError):
            flag = None
    if flag == 1:
        return CallbackStatus.SUCCESS
    if flag in (2, 3):
        return CallbackStatus.FAILED

    raw = _first(payload.get("status"), payload.get("state"), data.get("state"), data.get("status"))
    if isinstance(raw, str):
        lowered = raw.strip().lower()
        if lowered in _SUCCESS_STATES:
            return CallbackStatus.SUCCESS
        if lowered in _FAILED_STATES:
            return CallbackStatus.FAILED
        return CallbackStatus.PENDING

    # Envelope without an explicit state: fall back to the envelope code.
    code = payload.get("code")
    if isinstance(code, int) and code >= 400:
        return CallbackStatus.FAILED
    return CallbackStatus.PENDING


def _result_urls(payload: dict, data: dict) -> list[str]:
    candidates = [
        payload.get("result"),
        payload.get("resultUrls"),
        data.get("resultUrls"),
        _as_dict(data.get("response")).get("resultUrls"),
        _as_dict(data.get("info")).get("resultUrls"),
        _as_dict(data.get("info")).get("result_urls"),
    ]

    result_json = data.get("resultJson")
    if isinstance(result_json, str) and result_json:
        try:
            candidates.append(_as_dict(json.loads(result_json)).get("resultUrls"))
        except ValueError:
            logger.warning("Callback resultJson is not valid JSON; ignoring it")
    elif isinstance(result_json, dict):
        candidates.append(result_json.get("resultUrls"))

    for candidate in candidates:
        urls = _url_list(candidate)
        if urls:
            return urls
    return []


def _failure_detail(payload: dict, data: dict) -> tuple[str | None, bool]:
    detail = _first(
        data.get("failMsg"),
        data.get("errorMessage"),
        payload.get("error"),
        payload.get("failMsg"),
        payload.get("errorMessage"),
        payload.get("msg"),
    )
    detail = str(detail) if detail is not None else None
    code = _first(data.get("errorCode"), data.get("failCode"), payload.get("errorCode"))
    lowered = (detail or "").lower()
    content_policy = any(marker in lowered for marker in _CONTENT_POLICY_MARKERS) or str(code) == "400"
    return detail, content_policy


def extract_correlation_id(payload: Any) -> str | None:
    """Find the provider task id in any supported payload shape."""
    if not isinstance(payload, dict):
        return None
    data = _as_dict(payload.get("data"))
    value = _first(
        payload.get("correlationId"),
        payload.get("taskId"),
        data.get("taskId"),
        data.get("correlationId"),
    )
    return str(value) if value is not None else None


def parse_callback(payload: Any) -> ParsedCallback:
    """Interpret a raw provider callback payload.

    The correlation id may be ``None``; :meth:`CallbackCorrelator.ingest`
    rejects such payloads, :meth:`CallbackCorrelator.record` does not need it.

    Raises:
        MalformedCallbackError: If *payload* is not a JSON object.
    """
    if not isinstance(payload, dict):
        raise MalformedCallbackError("Callback payload must be a JSON object")

    data = _as_dict(payload.get("data"))
    status = _normalise_status(payload, data)
    detail, content_policy = (None, False)
    if status is CallbackStatus.FAILED:
        detail, content_policy = _failure_detail(payload, data)

    return ParsedCallback(
        correlation_id=extract_correlation_id(payload),
        status=status,
        result_urls=_result_urls(payload, data),
        failure_detail=detail,
        content_policy=content_policy,
    )


class CallbackCorrelator:
    """Keyed store of :class:`~genr8.core.models.CallbackRecord` by correlation id.

    Args:
        store: Backing store.  Defaults to an in-memory store with
            *ttl_seconds* retention.
        ttl_seconds: Retention of records when no *store* is given.
        clock: Receipt timestamp source.
    """

    def __init__(
        self,
        store: KeyedStore[CallbackRecord] | None = None,
        ttl_seconds: float | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._records: KeyedStore[CallbackRecord] = store or InMemoryKeyedStore(ttl_seconds, clock=clock)
        self._clock = clock

    async def record(
        self,
        correlation_id: str,
        payload: dict[str, Any],
        received_at: datetime | None = None,
    ) -> CallbackRecord:
        """Upsert the callback for *correlation_id*.

        Raises:
            MalformedCallbackError: If *payload* is not a JSON object or the
                correlation id is empty.
        """
        if not correlation_id:
            raise MalformedCallbackError("Callback has no correlation id")
        parsed = parse_callback(payload)
        received_at = received_at or self._clock()

        def update(current: CallbackRecord | None) -> CallbackRecord:
            deliveries = current.deliveries + 1 if current else 1
            if current is not None and current.received_at > received_at:
                # Stale delivery: count it, keep the newer payload.
                current.deliveries = deliveries
                return current
            return CallbackRecord(
                correlation_id=correlation_id,
                payload=payload,
                received_at=received_at,
                status=parsed.status,
                result=parsed.result,
                result_urls=list(parsed.result_urls),
                failure_detail=parsed.failure_detail,
                content_policy=parsed.content_policy,
                deliveries=deliveries,
            )

        record = await self._records.upsert(correlation_id, update)
        logger.info(
            f"Callback for {correlation_id}: status={record.status.value}, "
            f"result={'yes' if record.result else 'no'}, deliveries={record.deliveries}"
        )
        return record

    async def ingest(self, payload: Any) -> CallbackRecord:
        """Parse a raw provider payload and record it.

        Raises:
            MalformedCallbackError: If no correlation id can be found.
        """
        correlation_id = extract_correlation_id(payload)
        if correlation_id is None:
            raise MalformedCallbackError("Callback payload carries no correlation/task id")
        return await self.record(correlation_id, payload)

    async def lookup(self, correlation_id: str) -> CallbackRecord:
        """Return the stored record.

        Raises:
            CallbackNotFoundError: If nothing is stored (or it expired).
        """
        record = await self._records.get(correlation_id)
        if record is None:
            raise CallbackNotFoundError(f"No callback recorded for {correlation_id}")
        return record

    async def find(self, correlation_id: str) -> CallbackRecord | None:
        """Like :meth:`lookup` but returns ``None`` on a miss."""
        return await self._records.get(correlation_id)
