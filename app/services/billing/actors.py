from __future__ import annotations

from dataclasses import dataclass

from app.models.billing import AuditActorType

SYSTEM_LABEL = "system"


@dataclass(frozen=True)
class Actor:
    """Identity on whose behalf a billing operation runs."""

    label: str
    actor_type: AuditActorType

    @classmethod
    def user(cls, user_id: str) -> "Actor":
        user_id = (user_id or "").strip()
        if not user_id:
            return SYSTEM_ACTOR
        return cls(label=user_id, actor_type=AuditActorType.user)

    @property
    def is_system(self) -> bool:
        return self.actor_type == AuditActorType.system


SYSTEM_ACTOR = Actor(label=SYSTEM_LABEL, actor_type=AuditActorType.system)
