"""
Organization and user value objects (``workflow_kernel.domain.organization``).

Responsibility
--------------
Typed representation of the caller-supplied identity data the engine
evaluates permissions against: the acting ``User`` and the
``OrganizationContext`` describing the positions that user holds.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  The engine
never queries an organization store; callers resolve users and
positions and hand them in.

Invariants enforced
-------------------
* All objects are frozen.
* ``from_dict`` accepts both the camelCase wire shape
  (``organizationId``, ``firstName``) and snake_case keys.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any


def _pick(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the first present key from ``data``."""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


@dataclass(frozen=True)
class User:
    """The acting user. ``id`` is also the lock-ownership identity."""

    id: str
    username: str
    first_name: str | None = None
    last_name: str | None = None

    @property
    def display_name(self) -> str:
        if self.first_name and self.last_name:
            return f"{self.first_name} {self.last_name}"
        return self.username

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> User:
        return cls(
            id=str(data["id"]),
            username=data.get("username") or str(data["id"]),
            first_name=_pick(data, "first_name", "firstName"),
            last_name=_pick(data, "last_name", "lastName"),
        )


@dataclass(frozen=True)
class Department:
    name: str


@dataclass(frozen=True)
class Team:
    name: str


@dataclass(frozen=True)
class Designation:
    """A job title. ``level`` orders designations in the hierarchy."""

    name: str
    level: int = 0


@dataclass(frozen=True)
class OrganizationGroup:
    """The department and/or team a position belongs to."""

    department: Department | None = None
    team: Team | None = None


@dataclass(frozen=True)
class Position:
    """One organizational position held by a user."""

    designation: Designation
    group: OrganizationGroup | None = None
    department: Department | None = None
    team: Team | None = None
    is_active: bool = True
    start_date: datetime | None = None
    end_date: datetime | None = None

    @property
    def department_name(self) -> str | None:
        """Group department first, then the position's own department."""
        dept = (self.group.department if self.group else None) or self.department
        return dept.name if dept else None

    @property
    def team_name(self) -> str | None:
        team = (self.group.team if self.group else None) or self.team
        return team.name if team else None

    def is_currently_active(self, at: datetime | None = None) -> bool:
        """Active flag plus, when ``at`` is given, the start/end window."""
        if not self.is_active:
            return False
        if at is None:
            return True
        if self.start_date is not None and self.start_date > at:
            return False
        return self.end_date is None or self.end_date >= at

    @property
    def full_title(self) -> str:
        group_name = self.department_name or self.team_name or "Unknown Group"
        return f"{self.designation.name} - {group_name}"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Position:
        designation = data.get("designation") or {}
        if isinstance(designation, str):
            designation = {"name": designation}
        group = data.get("group")
        return cls(
            designation=Designation(
                name=designation.get("name", ""),
                level=designation.get("level", 0),
            ),
            group=(
                OrganizationGroup(
                    department=_named(group.get("department"), Department),
                    team=_named(group.get("team"), Team),
                )
                if group
                else None
            ),
            department=_named(data.get("department"), Department),
            team=_named(data.get("team"), Team),
            is_active=_pick(data, "is_active", "isActive", default=True),
            start_date=_parse_datetime(_pick(data, "start_date", "startDate")),
            end_date=_parse_datetime(_pick(data, "end_date", "endDate")),
        )


@dataclass(frozen=True)
class OrganizationContext:
    """The sole source of role-derived permission facts."""

    organization_id: str | None = None
    positions: tuple[Position, ...] = ()

    @property
    def active_positions(self) -> tuple[Position, ...]:
        return tuple(p for p in self.positions if p.is_currently_active())

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> OrganizationContext:
        org_id = _pick(data, "organization_id", "organizationId")
        return cls(
            organization_id=str(org_id) if org_id is not None else None,
            positions=tuple(
                p if isinstance(p, Position) else Position.from_dict(p)
                for p in data.get("positions") or ()
            ),
        )


def _named(value: Any, kind: type) -> Any:
    if value is None:
        return None
    if isinstance(value, kind):
        return value
    if isinstance(value, str):
        return kind(name=value)
    return kind(name=value.get("name", ""))


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))
