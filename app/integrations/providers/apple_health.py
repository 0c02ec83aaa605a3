"""
Apple Health adapter.

HealthKit has no server API: the iOS app reads HealthKit and pushes batches
to the upload endpoint. ``/connect`` issues a short-lived upload token that
authenticates those pushes; the first accepted upload marks the link
connected. ``sync`` has nothing to pull and only stamps the sync time.
"""
import hmac
import secrets
import uuid
from typing import Any, Dict, Iterator, List, Optional, Tuple
from urllib.parse import quote

from app.core.config import settings
from app.core.logging_config import log_info
from app.core.time_utils import epoch_seconds, parse_iso_datetime, serialize_datetime
from app.integrations.base import BaseProvider
from app.integrations.exceptions import (
    DataValidationException,
    InvalidCallbackException,
    InvalidUploadTokenException,
)
from app.integrations.schemas import ConnectResponse, SyncResult
from app.integrations.token_store import StoredToken

METERS_PER_MILE = 1609.344

WORKOUT_CATEGORIES = {
    "HKWorkoutActivityTypeRunning": "Run",
    "HKWorkoutActivityTypeWalking": "Walk",
    "HKWorkoutActivityTypeCycling": "Bike",
    "HKWorkoutActivityTypeSwimming": "Swim",
    "HKWorkoutActivityTypeYoga": "Yoga",
    "HKWorkoutActivityTypeStrengthTraining": "Strength",
    "HKWorkoutActivityTypeHiking": "Hike",
    "HKWorkoutActivityTypeDancing": "Dance",
    "HKWorkoutActivityTypeBasketball": "Basketball",
    "HKWorkoutActivityTypeTennis": "Tennis",
    "HKWorkoutActivityTypeGolf": "Golf",
    "HKWorkoutActivityTypeSoccer": "Soccer",
}

METRIC_CATEGORIES = {
    "HKQuantityTypeIdentifierBodyMass": "Weight",
    "HKQuantityTypeIdentifierHeight": "Height",
    "HKQuantityTypeIdentifierBodyFatPercentage": "Body Fat",
    "HKQuantityTypeIdentifierLeanBodyMass": "Lean Body Mass",
    "HKQuantityTypeIdentifierBodyMassIndex": "BMI",
    "HKQuantityTypeIdentifierBloodPressureSystolic": "Blood Pressure (Systolic)",
    "HKQuantityTypeIdentifierBloodPressureDiastolic": "Blood Pressure (Diastolic)",
    "HKQuantityTypeIdentifierRestingHeartRate": "Resting Heart Rate",
    "HKQuantityTypeIdentifierVO2Max": "VO2 Max",
}

HealthItem = Tuple[str, str, str, Dict[str, Any]]


def _miles(meters: Optional[float]) -> Optional[float]:
    return meters / METERS_PER_MILE if meters else None


def _external(record: Dict[str, Any], kind: str) -> Dict[str, Any]:
    return {"provider": "apple_health", "id": str(record["id"]), "type": kind}


def workout_items(workouts: List[Dict[str, Any]]) -> Iterator[HealthItem]:
    for workout in workouts:
        start = serialize_datetime(parse_iso_datetime(workout["startDate"]))
        end = serialize_datetime(parse_iso_datetime(workout["endDate"]))
        yield "Activity", WORKOUT_CATEGORIES.get(workout.get("workoutType"), "Other"), f"Workout | {start} - {end}", {
            "start_time": start,
            "end_time": end,
            "duration_minutes": workout.get("duration"),
            "calories": workout.get("totalEnergyBurned"),
            "distance": _miles(workout.get("totalDistance")),
            "workout_type": workout.get("workoutType"),
            "metadata": workout.get("metadata") or {},
            "external": _external(workout, "workout"),
        }


def metric_items(metrics: List[Dict[str, Any]]) -> Iterator[HealthItem]:
    for metric in metrics:
        category = METRIC_CATEGORIES.get(metric.get("type"), "Other Health Metric")
        yield "Health", category, f"{category} | Health Metric", {
            "date": metric.get("date"),
            "value": metric.get("value"),
            "unit": metric.get("unit"),
            "metric_type": metric.get("type"),
            "external": _external(metric, "metric"),
        }


def step_items(steps: List[Dict[str, Any]]) -> Iterator[HealthItem]:
    for day in steps:
        yield "Health", "Steps", f"Steps | {day['date']}", {
            "date": day["date"],
            "step_count": day.get("stepCount"),
            "distance": _miles(day.get("distance")),
            "external": _external(day, "steps"),
        }


def heart_rate_items(samples: List[Dict[str, Any]]) -> Iterator[HealthItem]:
    for sample in samples:
        context = sample.get("context")
        category = f"Heart Rate ({context})" if context else "Heart Rate"
        yield "Health", category, f"Heart Rate | {sample['date']}", {
            "date": sample["date"],
            "heart_rate": sample.get("value"),
            "context": context,
            "external": _external(sample, "heart_rate"),
        }


def sleep_items(sessions: List[Dict[str, Any]]) -> Iterator[HealthItem]:
    for session in sessions:
        yield "Health", f"Sleep ({session.get('value')})", f"Sleep | {session['startDate']} - {session['endDate']}", {
            "start_time": serialize_datetime(parse_iso_datetime(session["startDate"])),
            "end_time": serialize_datetime(parse_iso_datetime(session["endDate"])),
            "duration_minutes": session.get("duration"),
            "sleep_value": session.get("value"),
            "external": _external(session, "sleep"),
        }


HEALTH_SECTIONS = (
    ("workouts", workout_items),
    ("healthMetrics", metric_items),
    ("steps", step_items),
    ("heartRate", heart_rate_items),
    ("sleep", sleep_items),
)


class AppleHealthProvider(BaseProvider):
    """HealthKit upload adapter."""

    name = "apple_health"
    display_name = "Apple Health"
    state_prefix = "apple-health-"
    list_name = "Health"

    def validate_config(self) -> None:
        self.require_settings(apple_health_upload_endpoint=settings.apple_health_upload_endpoint)

    async def issue_upload_token(self, user_id: uuid.UUID) -> str:
        """Store and return a fresh upload token; any previous one stops working."""
        upload_token = f"ah_{secrets.token_urlsafe(24)}"
        await self.token_store.set(user_id, self.name, StoredToken(
            access_token=upload_token,
            expires_at=epoch_seconds() + settings.apple_health_upload_token_ttl_seconds,
        ))
        return upload_token

    async def create_connection(self, user_id: uuid.UUID) -> ConnectResponse:
        self.validate_config()
        state = self.new_state(user_id)
        await self.persistence.ensure_integration(self.name)
        upload_token = await self.issue_upload_token(user_id)

        endpoint = quote(settings.apple_health_upload_endpoint, safe="")
        return ConnectResponse(
            provider=self.name,
            state=state,
            redirect_url=(
                f"applehealth://connect?uploadEndpoint={endpoint}"
                f"&uploadToken={upload_token}&state={quote(state, safe='')}"
            ),
        )

    async def verify_upload_token(self, user_id: uuid.UUID, upload_token: str) -> None:
        stored = await self.token_store.get(user_id, self.name)
        if stored is None or not hmac.compare_digest(stored.access_token, upload_token or ""):
            raise InvalidUploadTokenException(self.name)
        if stored.seconds_remaining() < 0:
            raise InvalidUploadTokenException(self.name)

    async def handle_callback(self, payload: Dict[str, Any]) -> None:
        state = payload.get("state")
        upload_token = payload.get("upload_token") or payload.get("uploadToken")
        if not state or not upload_token:
            raise InvalidCallbackException(
                self.name, "Missing required callback parameters: state and uploadToken are required"
            )
        user_id = self.user_id_from_state(str(state))
        health_data = payload.get("health_data") or payload.get("healthData") or {}
        await self.handle_data_upload(user_id, upload_token, health_data)

    async def handle_data_upload(
        self, user_id: uuid.UUID, upload_token: str, health_data: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Store one HealthKit batch pushed by the device.

        Raises:
            InvalidUploadTokenException: unknown, mismatched or expired token
            DataValidationException: a section is not a list
        """
        await self.verify_upload_token(user_id, upload_token)
        counts = await self.store_health_data(user_id, health_data)

        link = await self.mark_connected(user_id)
        await self.persistence.mark_synced(link.id)
        log_info("Apple Health upload stored", user_id=str(user_id), counts=counts)
        return {
            "ok": True,
            "message": "Health data uploaded successfully (duplicates skipped/updated)",
            "counts": counts,
        }

    async def store_health_data(self, user_id: uuid.UUID, health_data: Dict[str, Any]) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for section, to_items in HEALTH_SECTIONS:
            records = health_data.get(section) or []
            if not isinstance(records, list):
                raise DataValidationException(self.name, f"'{section}' must be a list")
            stored = 0
            for list_name, category, title, attributes in to_items(records):
                stored += await self.save_items(user_id, list_name, category, [(title, attributes)])
            counts[section] = stored
        return counts

    async def sync(self, user_id: uuid.UUID) -> SyncResult:
        _, link, since = await self.sync_window(user_id, settings.apple_health_default_days)
        details = {
            "since": since.isoformat(),
            "message": "Apple Health sync completed",
            "note": "Data sync is initiated from the iOS app",
        }
        return await self.finish_sync(user_id, link, details)

    async def status_details(self, user_id: uuid.UUID) -> Dict[str, Any]:
        token = await self.token_store.get(user_id, self.name)
        return {
            "upload_endpoint": settings.apple_health_upload_endpoint,
            "upload_token_valid": token is not None and token.seconds_remaining() > 0,
        }
