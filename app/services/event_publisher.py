from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol


@dataclass(frozen=True)
class DomainEvent:
    type: str
    payload: dict[str, Any]
    actor_principal_id: int | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type,
            'payload': self.payload,
            'actor_principal_id': self.actor_principal_id,
            'timestamp': self.timestamp.isoformat(),
        }


class EventPublisher(Protocol):
    def publish(self, event: DomainEvent) -> None: ...
