"""Deal event schema for the outbound dispatch stream.

Provides DealEvent, the ``(event_type, deal_snapshot)`` pair emitted by the
CRM whenever deal state changes. Events serialize to flat string dicts for
Redis Streams and deserialize back losslessly.

Stream key pattern: crm:events:{stream_name}
"""

from __future__ import annotations

import hashlib
import json
import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, Field, model_validator

from src.crm.webhooks.schemas import DealSnapshot, WebhookEvent


class DealEvent(BaseModel):
    """One deal state change to fan out to subscribed webhooks.

    ``event_id`` identifies the event occurrence and keys the delivery
    lineage of every webhook it reaches. When the producer does not set it,
    it is derived from the event type and the deal snapshot, plus
    ``occurred_at`` only if the producer supplied one, so a re-emitted
    transition maps to the same lineage.

    Attributes:
        event_id: Occurrence key shared by duplicate emissions.
        version: Schema version for forward compatibility.
        event_type: Deal lifecycle event.
        occurred_at: UTC time of the transition.
        deal: Snapshot sent as the envelope ``data``.
        source: Emitting component, for tracing.
    """

    event_id: str = ""
    version: str = "1.0"
    event_type: WebhookEvent
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    deal: DealSnapshot
    source: str = "crm"

    @model_validator(mode="after")
    def _derive_event_id(self) -> DealEvent:
        if not self.event_id:
            snapshot = json.dumps(
                self.deal.model_dump(mode="json"), sort_keys=True, separators=(",", ":")
            )
            basis = f"{self.event_type.value}|{snapshot}"
            if "occurred_at" in self.model_fields_set:
                basis += f"|{self.occurred_at.isoformat()}"
            self.event_id = hashlib.sha256(basis.encode("utf-8")).hexdigest()[:32]
        return self

    @classmethod
    def new(cls, event_type: WebhookEvent, deal: DealSnapshot) -> DealEvent:
        """Build an event with a random occurrence key."""
        return cls(event_id=str(uuid.uuid4()), event_type=event_type, deal=deal)

    def to_stream_dict(self) -> dict[str, str]:
        """Serialize to a flat dict of strings for XADD."""
        return {
            "event_id": self.event_id,
            "version": self.version,
            "event_type": self.event_type.value,
            "occurred_at": self.occurred_at.isoformat(),
            "deal": self.deal.model_dump_json(),
            "source": self.source,
        }

    @classmethod
    def from_stream_dict(cls, raw: dict[str, str]) -> DealEvent:
        """Reverse ``to_stream_dict()`` for a message read by XREADGROUP."""
        return cls(
            event_id=raw["event_id"],
            version=raw.get("version", "1.0"),
            event_type=WebhookEvent(raw["event_type"]),
            occurred_at=datetime.fromisoformat(raw["occurred_at"]),
            deal=DealSnapshot.model_validate(json.loads(raw["deal"])),
            source=raw.get("source") or "crm",
        )
