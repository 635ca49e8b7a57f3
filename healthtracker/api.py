# healthtracker/api.py
# Client for the tracker's PHP endpoints (form posts, JSON list reads).
import logging
from typing import Any, Dict, List, Optional

import httpx

from .models import (
    HealthMetric,
    HealthMetricDraft,
    InvalidPayload,
    Medication,
    MedicationDraft,
    health_metrics_from_json,
    medications_from_json,
)

logger = logging.getLogger("healthtracker.api")

MEDICATIONS_PATH = "medications.php"
HEALTH_METRICS_PATH = "health_metrics.php"
ADD_MEDICATION_PATH = "add_medication.php"
ADD_HEALTH_METRIC_PATH = "add_health_metric.php"
TOGGLE_MEDICATION_PATH = "toggle_medication.php"


class ApiError(Exception):
    pass


class ApiStatusError(ApiError):
    def __init__(self, path: str, status_code: int, body: str = ""):
        self.path = path
        self.status_code = int(status_code)
        self.body = body
        super().__init__(f"{path}: HTTP {self.status_code}")


class HealthApi:
    def __init__(self, base_url: str, timeout_s: float = 15.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.base_url = base_url.rstrip("/") + "/"
        self.timeout_s = float(timeout_s)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._depth = 0

    def _new_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout_s,
                                 transport=self._transport)

    async def __aenter__(self) -> "HealthApi":
        # nested `async with` blocks share the outermost client
        if self._depth == 0:
            self._client = self._new_client()
        self._depth += 1
        return self

    async def __aexit__(self, *exc) -> None:
        self._depth -= 1
        if self._depth > 0:
            return
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    async def _send(self, method: str, path: str, data: Optional[Dict[str, str]] = None) -> httpx.Response:
        if self._client is not None:
            r = await self._client.request(method, path, data=data)
        else:
            async with self._new_client() as client:
                r = await client.request(method, path, data=data)
        if r.status_code != 200:
            logger.warning(f"{method} {path} -> {r.status_code}: {r.text[:200]}")
            raise ApiStatusError(path, r.status_code, r.text)
        return r

    async def _get_list(self, path: str) -> List[Any]:
        r = await self._send("GET", path)
        try:
            data = r.json()
        except ValueError as e:
            raise InvalidPayload(f"{path}: bad JSON response: {e}") from e
        if not isinstance(data, list):
            raise InvalidPayload(f"{path}: expected a JSON list, got {type(data).__name__}")
        return data

    # -------------------------
    # Reads
    # -------------------------
    async def fetch_medications(self) -> List[Medication]:
        return medications_from_json(await self._get_list(MEDICATIONS_PATH))

    async def fetch_health_metrics(self) -> List[HealthMetric]:
        return health_metrics_from_json(await self._get_list(HEALTH_METRICS_PATH))

    # -------------------------
    # Writes
    # -------------------------
    async def add_medication(self, draft: MedicationDraft) -> None:
        fields = draft.form_fields()
        await self._send("POST", ADD_MEDICATION_PATH, data=fields)
        logger.info(f"added medication {fields['name']!r} at {fields['time']} ({fields['repeat_type']})")

    async def add_health_metric(self, draft: HealthMetricDraft) -> None:
        fields = draft.form_fields()
        await self._send("POST", ADD_HEALTH_METRIC_PATH, data=fields)
        logger.info(f"added health metric {fields['type']}={fields['value']} @ {fields['timestamp']}")

    async def set_medication_completed(self, medication_id: int, completed: bool) -> None:
        await self._send("POST", TOGGLE_MEDICATION_PATH, data={
            "medication_id": str(medication_id),
            "completed": "true" if completed else "false",
        })
        logger.info(f"medication id={medication_id} completed={completed}")

    async def toggle_medication(self, medication: Medication) -> None:
        await self.set_medication_completed(medication.id, not medication.is_completed)
