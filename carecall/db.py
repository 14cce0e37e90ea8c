"""
Supabase Database Client.

Provides a singleton instance of the Supabase client and typed helper
methods for the Relational Store operations the call lifecycle needs:
user context, call history, call-record upserts, insights, and the
first-call milestone. Helpers log and return ``None``/``False`` on
failure so a single failed write never aborts the caller.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from supabase import Client, create_client

from carecall.config import get_settings
from carecall.logging_config import get_logger
from carecall.schemas.call import CallRecord
from carecall.schemas.insight import Insight

logger = get_logger(__name__)


class DatabaseClient:
    """Wrapper around the official Supabase Python client."""

    _instance: Optional[DatabaseClient] = None
    _client: Client

    def __new__(cls) -> DatabaseClient:
        """Singleton pattern to ensure only one client instance."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            settings = get_settings()

            if not settings.supabase_url or not settings.supabase_service_key:
                logger.warning(
                    "Supabase credentials missing. Database operations will fail.",
                    url=bool(settings.supabase_url),
                    key=bool(settings.supabase_service_key),
                )

            try:
                cls._instance._client = create_client(
                    settings.supabase_url,
                    settings.supabase_service_key,
                )
                logger.info("Supabase client initialized", url=settings.supabase_url)
            except Exception as e:
                cls._instance = None
                logger.error("Failed to initialize Supabase client", error=str(e))
                raise

        return cls._instance

    @property
    def client(self) -> Client:
        """Access the raw Supabase client."""
        return self._client

    # -- Users --

    async def get_user(self, user_id: str) -> dict[str, Any] | None:
        """Fetch a registered user by id."""
        settings = get_settings()
        try:
            response = (
                self.client.table(settings.users_table)
                .select("id, name, last_name, phone, birth_date, relationship, migrant_name, companion, created_at")
                .eq("id", user_id)
                .single()
                .execute()
            )
            return response.data
        except Exception as e:
            logger.error("Error fetching user", user_id=user_id, error=str(e))
            return None

    async def mark_first_call_done(self, user_id: str) -> bool:
        """Stamp the user's first-call milestone."""
        settings = get_settings()
        try:
            (
                self.client.table(settings.users_table)
                .update({"first_call_completed_at": datetime.now(timezone.utc).isoformat()})
                .eq("id", user_id)
                .execute()
            )
            return True
        except Exception as e:
            logger.error("Error marking first call done", user_id=user_id, error=str(e))
            return False

    # -- Calls --

    async def get_call_history(self, user_id: str, limit: int = 10) -> list[dict[str, Any]]:
        """Most recent call records for a user, newest first."""
        settings = get_settings()
        try:
            response = (
                self.client.table(settings.calls_table)
                .select("*")
                .eq("user_id", user_id)
                .order("created_at", desc=True)
                .limit(limit)
                .execute()
            )
            return response.data or []
        except Exception as e:
            logger.error("Error fetching call history", user_id=user_id, error=str(e))
            return []

    async def upsert_call_record(self, record: CallRecord) -> dict[str, Any] | None:
        """
        Insert or merge a call record keyed by ``external_call_id``.

        Only the fields set on ``record`` are written, so a later upsert
        augments the placeholder written when the call started.
        """
        settings = get_settings()
        row = record.to_row()
        row["updated_at"] = datetime.now(timezone.utc).isoformat()
        try:
            response = (
                self.client.table(settings.calls_table)
                .upsert(row, on_conflict="external_call_id")
                .execute()
            )
            if response.data:
                return response.data[0]
            return None
        except Exception as e:
            logger.error(
                "Error upserting call record",
                external_call_id=record.external_call_id,
                status=record.status,
                error=str(e),
            )
            return None

    async def get_call_record(self, external_call_id: str) -> dict[str, Any] | None:
        """Stored record of a Voice Platform call id, if any."""
        settings = get_settings()
        try:
            response = (
                self.client.table(settings.calls_table)
                .select("external_call_id, user_id, status, transcript")
                .eq("external_call_id", external_call_id)
                .limit(1)
                .execute()
            )
            if response.data:
                return response.data[0]
            return None
        except Exception as e:
            logger.error("Error fetching call record", external_call_id=external_call_id, error=str(e))
            return None

    async def get_calls_missing_transcript(self, limit: int = 10) -> list[dict[str, Any]]:
        """Completed calls saved without a transcript, oldest first."""
        settings = get_settings()
        try:
            response = (
                self.client.table(settings.calls_table)
                .select("external_call_id, user_id, duration_seconds, recording_url")
                .eq("status", "completed")
                .is_("transcript", "null")
                .not_.is_("user_id", "null")
                .order("updated_at", desc=False)
                .limit(limit)
                .execute()
            )
            return response.data or []
        except Exception as e:
            logger.error("Error fetching calls missing transcript", error=str(e))
            return []

    # -- Insights --

    async def upsert_insight(self, insight: Insight) -> dict[str, Any] | None:
        """
        Write the insight for a call once.

        Keyed by ``call_id``; a second write for the same call leaves the
        stored row untouched.
        """
        settings = get_settings()
        row = insight.to_row()
        try:
            response = (
                self.client.table(settings.insights_table)
                .upsert(row, on_conflict="call_id", ignore_duplicates=True)
                .execute()
            )
            if response.data:
                return response.data[0]
            logger.info("Insight already recorded", call_id=insight.call_id)
            return row
        except Exception as e:
            logger.error("Error saving insight", call_id=insight.call_id, error=str(e))
            return None

    # -- Carrier events --

    async def log_call_event(
        self, call_control_id: str, event_type: str, data: dict[str, Any]
    ) -> dict[str, Any] | None:
        settings = get_settings()
        try:
            response = (
                self.client.table(settings.call_events_table)
                .insert({
                    "call_control_id": call_control_id,
                    "event_type": event_type,
                    "data": data,
                })
                .execute()
            )
            if response.data:
                return response.data[0]
            return None
        except Exception as e:
            logger.warning("Error logging call event", call_control_id=call_control_id, error=str(e))
            return None

    # -- Health --

    async def health_check(self) -> dict[str, Any]:
        settings = get_settings()
        try:
            self.client.table(settings.users_table).select("id").limit(1).execute()
            return {"status": "healthy"}
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return {"status": "unhealthy", "error": str(e)}


# Global accessor
def get_db() -> DatabaseClient:
    return DatabaseClient()
