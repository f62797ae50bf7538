"""Tracking event store backed by SQLite.

Owns all reads and writes of the tracking_events table. Ingestion is an
insert-or-merge keyed by (store_id, event_id); attribution write-back only
fills entity ids that are still null.
"""
import logging
import sqlite3
from datetime import datetime
from typing import Iterable, Optional

from ..exceptions import EventNotFoundError
from .models import (
    PURCHASE_EVENT,
    REFUND_EVENT,
    SIGNAL_FIELDS,
    EntityIds,
    IngestResult,
    MatchSignals,
    TrackingEvent,
    TrackingEventDraft,
)
from .timestamps import format_timestamp


logger = logging.getLogger(__name__)


MAPPED_CLAUSE = "(campaign_id IS NOT NULL OR adset_id IS NOT NULL OR ad_id IS NOT NULL)"
UNMAPPED_CLAUSE = "(campaign_id IS NULL AND adset_id IS NULL AND ad_id IS NULL)"

# Fields a later ingestion may fill in on an existing row (first write wins).
MERGEABLE_FIELDS: tuple[str, ...] = (
    "click_id",
    "value",
    "currency",
    "order_id",
    "campaign_id",
    "adset_id",
    "ad_id",
    "payload_json",
)

_INSERT_COLUMNS: tuple[str, ...] = (
    "store_id",
    "event_name",
    "event_id",
    "source",
    "occurred_at",
    "page_url",
    "referrer",
    "session_id",
    "click_id",
    "fbp",
    "fbc",
    "external_id",
    "email_hash",
    "phone_hash",
    "ip_hash",
    "user_agent",
    "value",
    "currency",
    "order_id",
    "campaign_id",
    "adset_id",
    "ad_id",
    "payload_json",
)

SIGNAL_CANDIDATE_LIMIT = 250


class EventStore:
    """Insert-or-merge event log plus the candidate queries the matchers need."""

    def __init__(self, db_conn: sqlite3.Connection) -> None:
        """Initialize event store.

        Args:
            db_conn: SQLite connection with the schema applied
        """
        self.db_conn = db_conn
        self.db_conn.row_factory = sqlite3.Row

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def ingest(self, draft: TrackingEventDraft) -> IngestResult:
        """Insert a new event, or merge into the existing (store_id, event_id) row.

        Args:
            draft: Validated inbound event

        Returns:
            IngestResult(inserted, updated)
        """
        values = self._draft_values(draft)
        placeholders = ", ".join("?" for _ in _INSERT_COLUMNS)

        with self.db_conn:
            cursor = self.db_conn.execute(
                f"""
                INSERT INTO tracking_events ({", ".join(_INSERT_COLUMNS)})
                VALUES ({placeholders})
                ON CONFLICT(store_id, event_id) DO NOTHING
                """,
                tuple(values[column] for column in _INSERT_COLUMNS),
            )

            if cursor.rowcount > 0:
                logger.debug(
                    "Inserted %s event store=%s event_id=%s",
                    draft.event_name,
                    draft.store_id,
                    draft.event_id,
                )
                return IngestResult(inserted=True, updated=False)

            if not draft.event_id:
                return IngestResult(inserted=False, updated=False)

            updated = self._merge(draft.store_id, draft.event_id, values)

        if updated:
            logger.debug(
                "Merged fields into event store=%s event_id=%s",
                draft.store_id,
                draft.event_id,
            )
        return IngestResult(inserted=False, updated=updated)

    def _merge(self, store_id: str, event_id: str, values: dict) -> bool:
        set_clause = ",\n".join(
            f"{name} = COALESCE({name}, :{name})" for name in MERGEABLE_FIELDS
        )
        changes_clause = " OR ".join(
            f"({name} IS NULL AND :{name} IS NOT NULL)" for name in MERGEABLE_FIELDS
        )
        params = {name: values[name] for name in MERGEABLE_FIELDS}
        params.update({"store_id": store_id, "event_id": event_id})

        cursor = self.db_conn.execute(
            f"""
            UPDATE tracking_events
            SET {set_clause}
            WHERE store_id = :store_id AND event_id = :event_id
              AND ({changes_clause})
            """,
            params,
        )
        return cursor.rowcount > 0

    @staticmethod
    def _draft_values(draft: TrackingEventDraft) -> dict:
        return {
            "store_id": draft.store_id,
            "event_name": draft.event_name,
            "event_id": draft.event_id,
            "source": draft.source.value,
            "occurred_at": format_timestamp(draft.occurred_at),
            "page_url": draft.page_url,
            "referrer": draft.referrer,
            "session_id": draft.session_id,
            "click_id": draft.click_id,
            "fbp": draft.fbp,
            "fbc": draft.fbc,
            "external_id": draft.external_id,
            "email_hash": draft.email_hash,
            "phone_hash": draft.phone_hash,
            "ip_hash": draft.ip_hash,
            "user_agent": draft.user_agent,
            "value": draft.value,
            "currency": draft.currency,
            "order_id": draft.order_id,
            "campaign_id": draft.campaign_id,
            "adset_id": draft.adset_id,
            "ad_id": draft.ad_id,
            "payload_json": draft.payload_json,
        }

    def assign_attribution(
        self,
        store_id: str,
        entity_ids: EntityIds,
        *,
        event_id: Optional[str] = None,
        row_id: Optional[int] = None,
    ) -> bool:
        """Write matcher output back onto an event, filling only null fields.

        Args:
            store_id: Owning store
            entity_ids: Assignment to apply
            event_id: External event id (either this or row_id)
            row_id: Internal surrogate id

        Returns:
            True if any field changed

        Raises:
            EventNotFoundError: if the target event does not exist
        """
        if event_id is None and row_id is None:
            raise ValueError("event_id or row_id is required")

        if event_id is not None:
            where, ref = "store_id = :store_id AND event_id = :ref", event_id
        else:
            where, ref = "store_id = :store_id AND id = :ref", row_id

        params = {
            "store_id": store_id,
            "ref": ref,
            "campaign_id": entity_ids.campaign_id,
            "adset_id": entity_ids.adset_id,
            "ad_id": entity_ids.ad_id,
        }

        with self.db_conn:
            exists = self.db_conn.execute(
                f"SELECT 1 FROM tracking_events WHERE {where}", params
            ).fetchone()
            if exists is None:
                raise EventNotFoundError(store_id, ref)

            cursor = self.db_conn.execute(
                f"""
                UPDATE tracking_events
                SET
                    campaign_id = COALESCE(campaign_id, :campaign_id),
                    adset_id = COALESCE(adset_id, :adset_id),
                    ad_id = COALESCE(ad_id, :ad_id)
                WHERE {where}
                  AND (
                    (campaign_id IS NULL AND :campaign_id IS NOT NULL)
                    OR (adset_id IS NULL AND :adset_id IS NOT NULL)
                    OR (ad_id IS NULL AND :ad_id IS NOT NULL)
                  )
                """,
                params,
            )
        return cursor.rowcount > 0

    def apply_bulk_assignments(
        self, store_id: str, assignments: Iterable[tuple[int, EntityIds]]
    ) -> int:
        """Apply many assignments in one transaction (all or nothing).

        Only rows that are still fully unmapped are touched, so re-running the
        same batch is a no-op.

        Returns:
            Number of rows changed
        """
        changed = 0
        with self.db_conn:
            for row_id, entity_ids in assignments:
                if entity_ids.is_empty:
                    continue
                cursor = self.db_conn.execute(
                    f"""
                    UPDATE tracking_events
                    SET campaign_id = ?, adset_id = ?, ad_id = ?
                    WHERE store_id = ? AND id = ? AND {UNMAPPED_CLAUSE}
                    """,
                    (
                        entity_ids.campaign_id,
                        entity_ids.adset_id,
                        entity_ids.ad_id,
                        store_id,
                        row_id,
                    ),
                )
                changed += cursor.rowcount
        return changed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _fetch(self, sql: str, params: tuple) -> list[TrackingEvent]:
        cursor = self.db_conn.execute(sql, params)
        return [TrackingEvent.from_row(row) for row in cursor.fetchall()]

    def get_event(self, store_id: str, event_id: str) -> Optional[TrackingEvent]:
        rows = self._fetch(
            "SELECT * FROM tracking_events WHERE store_id = ? AND event_id = ?",
            (store_id, event_id),
        )
        return rows[0] if rows else None

    def get_event_by_row_id(self, store_id: str, row_id: int) -> Optional[TrackingEvent]:
        rows = self._fetch(
            "SELECT * FROM tracking_events WHERE store_id = ? AND id = ?",
            (store_id, row_id),
        )
        return rows[0] if rows else None

    def latest_mapped_by_click_id(
        self, store_id: str, click_id: str, before: Optional[datetime] = None
    ) -> Optional[TrackingEvent]:
        """Most recent mapped event carrying click_id, at or before the cutoff."""
        sql = f"""
            SELECT * FROM tracking_events
            WHERE store_id = ?
              AND click_id = ?
              AND {MAPPED_CLAUSE}
        """
        params: list = [store_id, click_id]
        if before is not None:
            sql += " AND julianday(occurred_at) <= julianday(?)"
            params.append(format_timestamp(before))
        sql += " ORDER BY julianday(occurred_at) DESC, id DESC LIMIT 1"

        rows = self._fetch(sql, tuple(params))
        return rows[0] if rows else None

    def signal_candidates(
        self,
        store_id: str,
        signals: MatchSignals,
        before: Optional[datetime] = None,
        limit: int = SIGNAL_CANDIDATE_LIMIT,
    ) -> list[TrackingEvent]:
        """Mapped, non-refund events sharing at least one signal, newest first."""
        present = signals.present()
        if not present:
            return []

        overlap = " OR ".join(f"{name} = ?" for name, _ in present)
        sql = f"""
            SELECT * FROM tracking_events
            WHERE store_id = ?
              AND ({overlap})
              AND {MAPPED_CLAUSE}
              AND event_name != ?
        """
        params: list = [store_id, *(value for _, value in present), REFUND_EVENT]
        if before is not None:
            sql += " AND julianday(occurred_at) <= julianday(?)"
            params.append(format_timestamp(before))
        sql += " ORDER BY julianday(occurred_at) DESC, id DESC LIMIT ?"
        params.append(limit)

        return self._fetch(sql, tuple(params))

    def mapped_purchases_between(
        self, store_id: str, start: datetime, end: datetime
    ) -> list[TrackingEvent]:
        """Mapped Purchase events with occurred_at in [start, end]."""
        return self._fetch(
            f"""
            SELECT * FROM tracking_events
            WHERE store_id = ?
              AND event_name = ?
              AND {MAPPED_CLAUSE}
              AND julianday(occurred_at) >= julianday(?)
              AND julianday(occurred_at) <= julianday(?)
            """,
            (store_id, PURCHASE_EVENT, format_timestamp(start), format_timestamp(end)),
        )

    def unmapped_purchases_since(
        self, store_id: str, since: datetime
    ) -> list[TrackingEvent]:
        """Fully unmapped Purchase events since the cutoff that carry a signal."""
        any_signal = " OR ".join(f"{name} IS NOT NULL" for name in SIGNAL_FIELDS)
        return self._fetch(
            f"""
            SELECT * FROM tracking_events
            WHERE store_id = ?
              AND event_name = ?
              AND {UNMAPPED_CLAUSE}
              AND julianday(occurred_at) >= julianday(?)
              AND ({any_signal})
            ORDER BY julianday(occurred_at) ASC, id ASC
            """,
            (store_id, PURCHASE_EVENT, format_timestamp(since)),
        )

    def reference_touches_between(
        self, store_id: str, start: datetime, end: datetime
    ) -> list[TrackingEvent]:
        """Non-refund events with a campaign_id and a signal, occurred_at in [start, end]."""
        any_signal = " OR ".join(f"{name} IS NOT NULL" for name in SIGNAL_FIELDS)
        return self._fetch(
            f"""
            SELECT * FROM tracking_events
            WHERE store_id = ?
              AND campaign_id IS NOT NULL
              AND event_name != ?
              AND ({any_signal})
              AND julianday(occurred_at) >= julianday(?)
              AND julianday(occurred_at) <= julianday(?)
            """,
            (store_id, REFUND_EVENT, format_timestamp(start), format_timestamp(end)),
        )

    def events_between(
        self,
        store_id: str,
        since: datetime,
        until: datetime,
        event_name: Optional[str] = None,
        mapped_only: bool = False,
    ) -> list[TrackingEvent]:
        """Events with occurred_at in [since, until], oldest first."""
        sql = """
            SELECT * FROM tracking_events
            WHERE store_id = ?
              AND julianday(occurred_at) >= julianday(?)
              AND julianday(occurred_at) <= julianday(?)
        """
        params: list = [store_id, format_timestamp(since), format_timestamp(until)]
        if event_name is not None:
            sql += " AND event_name = ?"
            params.append(event_name)
        if mapped_only:
            sql += f" AND {MAPPED_CLAUSE}"
        sql += " ORDER BY julianday(occurred_at) ASC, id ASC"

        return self._fetch(sql, tuple(params))

    def recent_unattributed_purchases(
        self, store_id: str, since: datetime, until: datetime, limit: int = 25
    ) -> list[TrackingEvent]:
        """Latest unmapped purchases in the window (coverage troubleshooting)."""
        safe_limit = max(1, min(200, int(limit)))
        return self._fetch(
            f"""
            SELECT * FROM tracking_events
            WHERE store_id = ?
              AND event_name = ?
              AND {UNMAPPED_CLAUSE}
              AND julianday(occurred_at) >= julianday(?)
              AND julianday(occurred_at) <= julianday(?)
            ORDER BY julianday(occurred_at) DESC, id DESC
            LIMIT ?
            """,
            (
                store_id,
                PURCHASE_EVENT,
                format_timestamp(since),
                format_timestamp(until),
                safe_limit,
            ),
        )
