"""
Conflict Detector - do concurrently committed events invalidate ours?

When another writer committed events after we loaded an aggregate, the
detector compares every (ours, theirs) pair. A rule registered for the
ordered pair of event classes decides; without one, two events of the
same class conflict and different classes do not. One conflicting pair
is enough to reject the save.

Rules are registered at startup. Registering a pair again replaces the
previous rule (last registration wins). After `freeze()` the rule table
is read-only and safe to share between concurrent saves.
"""

from collections.abc import Callable, Sequence

from durable_aggregates.kernel.events import Event

ConflictPredicate = Callable[[Event, Event], bool]


def same_type_conflicts(uncommitted: Event, committed: Event) -> bool:
    """Default rule: conflict iff both events are of the same class"""
    return type(uncommitted) is type(committed)


def always_conflicts(uncommitted: Event, committed: Event) -> bool:
    return True


def never_conflicts(uncommitted: Event, committed: Event) -> bool:
    return False


class ConflictDetector:
    """Pairwise conflict rules keyed by (uncommitted class, committed class)"""

    def __init__(self) -> None:
        self._rules: dict[tuple[type[Event], type[Event]], ConflictPredicate] = {}
        self._frozen = False

    def register(
        self,
        uncommitted_cls: type[Event],
        committed_cls: type[Event],
        predicate: ConflictPredicate,
    ) -> None:
        """
        Register (or replace) the rule for an ordered pair of event classes

        Raises:
            RuntimeError: the detector has been frozen
        """
        if self._frozen:
            raise RuntimeError("ConflictDetector is frozen; register rules at startup")
        self._rules[(uncommitted_cls, committed_cls)] = predicate

    def register_symmetric(
        self,
        first_cls: type[Event],
        second_cls: type[Event],
        predicate: ConflictPredicate,
    ) -> None:
        """Register the same rule for (first, second) and (second, first)"""
        self.register(first_cls, second_cls, predicate)
        self.register(second_cls, first_cls, lambda u, c: predicate(c, u))

    def freeze(self) -> "ConflictDetector":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def rule_for(self, uncommitted_cls: type[Event], committed_cls: type[Event]) -> ConflictPredicate:
        return self._rules.get((uncommitted_cls, committed_cls), same_type_conflicts)

    def find_conflict(
        self,
        uncommitted: Sequence[Event],
        concurrently_committed: Sequence[Event],
    ) -> tuple[Event, Event] | None:
        """First conflicting (uncommitted, committed) pair, or None"""
        for ours in uncommitted:
            for theirs in concurrently_committed:
                if self.rule_for(type(ours), type(theirs))(ours, theirs):
                    return ours, theirs
        return None

    def has_conflict(
        self,
        uncommitted: Sequence[Event],
        concurrently_committed: Sequence[Event],
    ) -> bool:
        return self.find_conflict(uncommitted, concurrently_committed) is not None
