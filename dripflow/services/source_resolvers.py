from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Protocol

from sqlalchemy.orm import Session

from dripflow.core.errors import ConfigurationError
from dripflow.core.timeutils import utcnow
from dripflow.services.fact_sources import FactSources, SqlFactSources
from dripflow.services.predicate_catalog import CATALOG, FieldId, Operator, compare

Clock = Callable[[], datetime]


class SourceResolver(Protocol):
    field: FieldId

    def resolve(self, operator: Operator, value: Any) -> set[str]:
        ...


class HasPurchasedResolver:
    """Direct-flag resolver over purchase facts.

    ``equals false`` is answered as an explicit complement against the
    recipient directory, never by negating the positive set.
    """

    field = FieldId.HAS_PURCHASED

    def __init__(self, sources: FactSources):
        self.sources = sources

    def resolve(self, operator: Operator, value: Any) -> set[str]:
        purchasers = {fact.recipient_id for fact in self.sources.purchases()}
        if value is True:
            return purchasers
        return self.sources.all_recipient_ids() - purchasers


class AggregateNumericResolver:
    """Per-recipient aggregate filtered by a numeric operator.

    Only recipients that appear in the underlying facts are considered, so
    ``less_than`` never matches recipients without any facts.
    """

    def __init__(self, field: FieldId, load: Callable[[], dict[str, float]]):
        self.field = field
        self._load = load

    def resolve(self, operator: Operator, value: Any) -> set[str]:
        totals = self._load()
        return {recipient_id for recipient_id, total in totals.items() if compare(total, operator, value)}


class LastPurchaseRecencyResolver:
    """Days since a recipient's most recent purchase.

    ``greater_than N`` means the latest purchase is OLDER than N days ago and
    ``less_than N`` means it is newer; recipients who never purchased match
    neither.
    """

    field = FieldId.LAST_PURCHASE_DAYS_AGO

    def __init__(self, sources: FactSources, *, clock: Clock = utcnow):
        self.sources = sources
        self.clock = clock

    def _latest_purchases(self) -> dict[str, datetime]:
        latest: dict[str, datetime] = {}
        for fact in self.sources.purchases():
            current = latest.get(fact.recipient_id)
            if current is None or fact.purchased_at > current:
                latest[fact.recipient_id] = fact.purchased_at
        return latest

    def resolve(self, operator: Operator, value: Any) -> set[str]:
        now = self.clock()
        latest = self._latest_purchases()

        if operator == Operator.BETWEEN:
            low, high = value
            newest_allowed = now - timedelta(days=low)
            oldest_allowed = now - timedelta(days=high)
            return {rid for rid, at in latest.items() if oldest_allowed <= at <= newest_allowed}

        cutoff = now - timedelta(days=value)
        if operator == Operator.LESS_THAN:
            return {rid for rid, at in latest.items() if at > cutoff}
        if operator == Operator.GREATER_THAN:
            return {rid for rid, at in latest.items() if at < cutoff}
        if operator == Operator.EQUALS:
            target_day = cutoff.date()
            return {rid for rid, at in latest.items() if at.date() == target_day}
        raise ConfigurationError(f"Operator '{operator.value}' is not supported for 'last_purchase_days_ago'")


class PassTypeResolver:
    field = FieldId.PASS_TYPE

    def __init__(self, sources: FactSources):
        self.sources = sources

    def resolve(self, operator: Operator, value: Any) -> set[str]:
        holders = self.sources.pass_holders(value)
        if operator == Operator.EQUALS:
            return holders
        return self.sources.all_recipient_ids() - holders


class EngagementLevelResolver:
    field = FieldId.ENGAGEMENT_LEVEL

    def __init__(self, sources: FactSources):
        self.sources = sources

    def resolve(self, operator: Operator, value: Any) -> set[str]:
        snapshots = self.sources.snapshots()
        if operator == Operator.EQUALS:
            return {item.recipient_id for item in snapshots if item.level == value}
        return {item.recipient_id for item in snapshots if item.level != value}


class ResolverRegistry:
    def __init__(self) -> None:
        self._resolvers: dict[FieldId, SourceResolver] = {}

    def register(self, resolver: SourceResolver) -> None:
        if resolver.field not in CATALOG:
            raise ConfigurationError(f"Cannot register resolver for uncatalogued field '{resolver.field}'")
        self._resolvers[resolver.field] = resolver

    def get(self, field: FieldId) -> SourceResolver:
        resolver = self._resolvers.get(field)
        if resolver is None:
            raise ConfigurationError(f"No resolver registered for segment field '{field.value}'")
        return resolver

    def fields(self) -> list[FieldId]:
        return list(self._resolvers)


def _total_spent(sources: FactSources) -> dict[str, float]:
    totals: dict[str, float] = defaultdict(float)
    for fact in sources.purchases():
        totals[fact.recipient_id] += fact.amount
    return dict(totals)


def build_default_registry(sources: FactSources, *, clock: Clock = utcnow) -> ResolverRegistry:
    registry = ResolverRegistry()
    registry.register(HasPurchasedResolver(sources))
    registry.register(AggregateNumericResolver(FieldId.TOTAL_SPENT, lambda: _total_spent(sources)))
    registry.register(
        AggregateNumericResolver(
            FieldId.TOTAL_EVENTS_ATTENDED,
            lambda: {rid: float(count) for rid, count in sources.attendance_counts().items()},
        )
    )
    registry.register(LastPurchaseRecencyResolver(sources, clock=clock))
    registry.register(PassTypeResolver(sources))
    registry.register(EngagementLevelResolver(sources))
    registry.register(
        AggregateNumericResolver(
            FieldId.EMAIL_OPENS,
            lambda: {item.recipient_id: float(item.email_opens) for item in sources.snapshots()},
        )
    )
    registry.register(
        AggregateNumericResolver(
            FieldId.EMAIL_CLICKS,
            lambda: {item.recipient_id: float(item.email_clicks) for item in sources.snapshots()},
        )
    )
    return registry


def build_sql_registry(db: Session, *, clock: Clock = utcnow) -> ResolverRegistry:
    return build_default_registry(SqlFactSources(db), clock=clock)
