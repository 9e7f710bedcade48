"""
Ownership checks for mutating requests.

Posts are owned by the author's username (compared by value); users own their
own record, identified by user id.
"""

from __future__ import annotations

from typing import Optional, Protocol


class Owned(Protocol):
    @property
    def owner_key(self) -> str:
        ...


def is_owner(acting_identity: Optional[str], entity: Owned) -> bool:
    if not acting_identity:
        return False
    return acting_identity == entity.owner_key
