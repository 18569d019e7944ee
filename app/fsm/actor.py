"""Authenticated actor handed to every lifecycle command."""

import uuid
from dataclasses import dataclass

from app.fsm.states import Role


@dataclass(frozen=True)
class Actor:
    id: uuid.UUID
    role: Role
