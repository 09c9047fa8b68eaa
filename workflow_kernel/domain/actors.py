"""
Workflow actors (``workflow_kernel.domain.actors``).

Responsibility
--------------
Derive the abstract workflow actors a user holds (Approver, Analyzer,
...) from the free-text designations of their organizational positions.

Architecture position
---------------------
**Kernel domain layer** -- pure.  Consumed by ``StateNode.has_permission``
and by the engine when computing per-user action menus.

Invariants enforced
-------------------
* Every user holds ``Actor.REQUESTOR``, with or without positions.
* Matching is a case-insensitive substring test on the designation name.
* Only currently active positions contribute actors.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from enum import Enum

from workflow_kernel.domain.organization import OrganizationContext


class Actor(str, Enum):
    """Abstract role tags a state may require."""

    REQUESTOR = "Requestor"
    APPROVER = "Approver"
    ANALYZER = "Analyzer"
    DEVELOPER = "Developer"
    TESTER = "Tester"
    SUPPORTER = "Supporter"
    DESIGNER = "Designer"
    IMPLEMENTOR = "Implementor"


DEFAULT_DESIGNATION_KEYWORDS: Mapping[Actor, tuple[str, ...]] = {
    Actor.APPROVER: ("manager", "head", "director"),
    Actor.ANALYZER: ("analyst", "reviewer"),
    Actor.DEVELOPER: ("developer", "engineer"),
    Actor.TESTER: ("tester", "qa"),
    Actor.SUPPORTER: ("support", "maintenance"),
    Actor.DESIGNER: ("designer", "architect"),
    Actor.IMPLEMENTOR: ("implementor", "deployment", "devops", "infrastructure"),
}


class ActorResolver:
    """Maps designation keywords to actors.

    The keyword table is injectable so an organization with its own title
    conventions can plug in a different mapping without subclassing
    ``StateNode``.
    """

    def __init__(
        self,
        keywords: Mapping[str, Iterable[str]] | None = None,
    ) -> None:
        table = keywords if keywords is not None else DEFAULT_DESIGNATION_KEYWORDS
        self._keywords: dict[str, tuple[str, ...]] = {
            str(actor.value if isinstance(actor, Actor) else actor): tuple(
                k.lower() for k in words
            )
            for actor, words in table.items()
        }

    def resolve(self, organization_context: OrganizationContext | None) -> frozenset[str]:
        """Return the actor names held by the user described by ``organization_context``."""
        actors: set[str] = set()
        if organization_context is not None:
            for position in organization_context.active_positions:
                title = (position.designation.name or "").lower()
                for actor, words in self._keywords.items():
                    if any(word in title for word in words):
                        actors.add(actor)
        actors.add(Actor.REQUESTOR.value)
        return frozenset(actors)


DEFAULT_ACTOR_RESOLVER = ActorResolver()


def resolve_actors(organization_context: OrganizationContext | None) -> frozenset[str]:
    """Resolve actors with the default keyword table."""
    return DEFAULT_ACTOR_RESOLVER.resolve(organization_context)
