from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


ActorType = Literal["user", "system"]


@dataclass(frozen=True)
class Actor:
    # Acting principal recorded on audit rows and ledger entries.
    actor_type: ActorType
    actor_id: str | None
    role: str

    @property
    def is_system(self) -> bool:
        return self.actor_type == "system"

    @classmethod
    def user(cls, actor_id: str, role: str) -> "Actor":
        if not actor_id:
            raise ValueError("user actors require an actor_id")
        return cls(actor_type="user", actor_id=actor_id, role=role)


# Automated runs act as this principal; request headers can only produce user actors.
SYSTEM_ACTOR = Actor(actor_type="system", actor_id=None, role="system")
