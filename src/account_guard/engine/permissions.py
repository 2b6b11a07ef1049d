"""API key permission scopes.

Permissions are a tagged set: either the explicit *all* grant or a set of
named scopes. The ``*`` wildcard only exists at the serialization edge.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from account_guard.errors.definitions import ErrInvalidPermission

if TYPE_CHECKING:
    from collections.abc import Iterable

WILDCARD = "*"

_SCOPE_RE = re.compile(r"^[a-z][a-z0-9_:.-]{0,63}$")


@dataclass(frozen=True)
class PermissionSet:
    """Immutable set of granted scopes.

    Attributes:
        grants_all: True if every scope is granted.
        scopes: Named scopes granted explicitly.
    """

    grants_all: bool = False
    scopes: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def all(cls) -> PermissionSet:
        """The unrestricted permission set."""
        return cls(grants_all=True)

    @classmethod
    def parse(cls, values: Iterable[str]) -> PermissionSet:
        """Build a set from its serialized form.

        Raises:
            GuardError: If a scope is not a valid scope name.
        """
        grants_all = False
        scopes: set[str] = set()
        for raw in values:
            value = raw.strip()
            if value == WILDCARD:
                grants_all = True
            elif _SCOPE_RE.match(value):
                scopes.add(value)
            else:
                raise ErrInvalidPermission
        return cls(grants_all=grants_all, scopes=frozenset(scopes))

    def allows(self, required: str) -> bool:
        """True if *required* is granted."""
        return self.grants_all or required in self.scopes

    def to_list(self) -> list[str]:
        """Serialized form, wildcard first then sorted scopes."""
        items = sorted(self.scopes)
        return [WILDCARD, *items] if self.grants_all else items
