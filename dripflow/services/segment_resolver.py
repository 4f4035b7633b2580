import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from dripflow.services.predicate_catalog import Predicate, validate_predicate
from dripflow.services.source_resolvers import ResolverRegistry

logger = logging.getLogger("dripflow.segments")


@dataclass(frozen=True)
class SegmentResolution:
    matched_ids: frozenset[str]
    evaluated_fields: tuple[str, ...] = field(default_factory=tuple)
    short_circuited: bool = False

    @property
    def count(self) -> int:
        return len(self.matched_ids)


def resolve_segment(
    predicates: Sequence[Mapping[str, Any] | Predicate],
    registry: ResolverRegistry,
) -> SegmentResolution:
    """AND-combine predicates into the set of matching recipient ids.

    Every predicate is validated and mapped to a resolver before any source is
    read, so a configuration error fails the whole call instead of silently
    dropping the predicate. Resolution stops at the first empty intersection.
    """
    validated = [item if isinstance(item, Predicate) else validate_predicate(item) for item in predicates]
    plan = [(predicate, registry.get(predicate.field)) for predicate in validated]

    candidate: set[str] | None = None
    evaluated: list[str] = []
    for predicate, resolver in plan:
        matched = resolver.resolve(predicate.operator, predicate.value)
        evaluated.append(predicate.field.value)
        candidate = set(matched) if candidate is None else candidate & matched
        if not candidate:
            skipped = len(plan) - len(evaluated)
            if skipped:
                logger.info(
                    json.dumps(
                        {
                            "event": "segment.resolve_short_circuit",
                            "empty_at": predicate.field.value,
                            "skipped_predicates": skipped,
                        }
                    )
                )
            return SegmentResolution(
                matched_ids=frozenset(),
                evaluated_fields=tuple(evaluated),
                short_circuited=skipped > 0,
            )

    return SegmentResolution(matched_ids=frozenset(candidate or ()), evaluated_fields=tuple(evaluated))
