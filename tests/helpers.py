"""Test doubles and sample data shared by the GENR8 test suite."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import httpx

from genr8.core.errors import PaymentBackendError
from genr8.core.models import PaymentIntent
from genr8.core.payment import PaymentBackend

TEST_MODELS = [
    {
        "id": "img-model",
        "name": "Image Model",
        "provider": "kie-jobs",
        "price": "0.04",
        "modality": "image",
    },
    {
        "id": "vid-model",
        "name": "Video Model",
        "provider": "kie-veo",
        "provider_model": "veo3_fast",
        "price": "0.36",
        "modality": "video",
    },
    {
        "id": "soon-model",
        "name": "Soon Model",
        "provider": "kie-jobs",
        "price": "0.35",
        "modality": "video",
        "coming_soon": True,
    },
    {
        "id": "sora",
        "name": "Sora 2",
        "provider": "kie-jobs",
        "provider_model": "sora-2-text-to-video",
        "price": "0.50",
        "modality": "video",
    },
]

EXEMPT_WALLET = "0xFREE"


# ---------------------------------------------------------------------------
# Test doubles.
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakePaymentBackend(PaymentBackend):
    """Settlement backend whose answer is set by the test."""

    def __init__(self) -> None:
        self.settled = False
        self.error: Exception | None = None
        self.calls: list[PaymentIntent] = []

    async def verify(self, intent: PaymentIntent) -> bool:
        self.calls.append(intent)
        if self.error is not None:
            raise self.error
        return self.settled

    def fail_with(self, message: str = "backend down") -> None:
        self.error = PaymentBackendError(message)


class FakeProviderAPI:
    """Request handler for ``httpx.MockTransport`` mimicking the jobs API.

    Accepted submissions get the task ids queued with :meth:`issue`, then
    fresh ids ``task-1``, ``task-2``, ...  Queue rejections with
    :meth:`reject_next`.  Status lookups (``GET``) answer "still generating"
    unless a record was set with :meth:`report`.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.status_queries: list[httpx.Request] = []
        self.status_error: int | None = None
        self._queued: list[httpx.Response] = []
        self._task_ids: list[str] = []
        self._records: dict[str, dict] = {}
        self._issued = 0

    def issue(self, *task_ids: str) -> None:
        self._task_ids.extend(task_ids)

    def reject_next(self, times: int = 1, status_code: int = 500, body: dict | None = None) -> None:
        for _ in range(times):
            self._queued.append(
                httpx.Response(status_code, json=body or {"code": status_code, "msg": "upstream error"})
            )

    def report(self, task_id: str, data: dict) -> None:
        """Serve *data* as the ``data`` object of the task's status record."""
        self._records[task_id] = {"taskId": task_id, **data}

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return self._status(request)
        self.requests.append(request)
        if self._queued:
            return self._queued.pop(0)
        self._issued += 1
        task_id = self._task_ids.pop(0) if self._task_ids else f"task-{self._issued}"
        return httpx.Response(200, json={"code": 200, "msg": "success", "data": {"taskId": task_id}})

    def _status(self, request: httpx.Request) -> httpx.Response:
        self.status_queries.append(request)
        if self.status_error is not None:
            return httpx.Response(self.status_error, json={"code": self.status_error, "msg": "lookup failed"})
        task_id = request.url.params.get("taskId")
        data = self._records.get(task_id, {"taskId": task_id, "state": "generating"})
        return httpx.Response(200, json={"code": 200, "msg": "success", "data": data})

    @property
    def payloads(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]
