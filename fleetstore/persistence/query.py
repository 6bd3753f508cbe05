from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from functools import reduce
from typing import Any, Callable, Mapping, Sequence

from sqlalchemy import Select, func, select
from sqlalchemy.sql.elements import ColumnElement

from fleetstore.core.config import get_settings
from fleetstore.core.errors import InvalidQueryError
from fleetstore.persistence.filters import build_clause, parse_filters
from fleetstore.persistence.guards import tenant_predicate


SORT_ASC = "asc"
SORT_DESC = "desc"


@dataclass(frozen=True)
class QueryField:
    # Plain column for eq/ne/gt/bool/contains-string comparisons.
    column: Any = None
    # Builds "all of these values are present" for set-valued fields.
    contains_all: Callable[[Sequence[str]], ColumnElement] | None = None
    # Virtual field expanded against the builder (e.g. presence).
    predicate: Callable[["QueryBuilder", Any], ColumnElement] | None = None
    sortable: bool = True


@dataclass(frozen=True)
class QuerySource:
    name: str
    model: Any
    fields: Mapping[str, QueryField]
    default_sort: str
    # Unique column appended to every ordering so pages never overlap.
    tiebreaker: Any
    tenant_column: Any = None
    default_order: str = "desc"
    aliases: Mapping[str, str] = field(default_factory=dict)
    member_predicate: Callable[[str], ColumnElement] | None = None

    def lookup(self, name: str) -> QueryField:
        resolved = self.aliases.get(name, name)
        query_field = self.fields.get(resolved)
        if query_field is None:
            raise InvalidQueryError(f"unknown {self.name} field: {name}")
        return query_field


@dataclass(frozen=True)
class Page:
    page: int
    per_page: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page


@dataclass(frozen=True)
class QueryBuilder:
    source: QuerySource
    now: datetime
    presence_window: timedelta
    criteria: tuple[ColumnElement, ...] = ()
    ordering: tuple[Any, ...] = ()
    page: Page | None = None

    def apply(self, *options: "QueryOption") -> "QueryBuilder":
        # Options run in the order supplied.
        return reduce(lambda builder, option: option(builder), options, self)

    def where(self, *clauses: ColumnElement) -> "QueryBuilder":
        return replace(self, criteria=self.criteria + tuple(clauses))

    def count_statement(self) -> Select:
        # Same criteria as the data statement, without ordering, paging or joins.
        return select(func.count()).select_from(self.source.model).where(*self.criteria)

    def data_statement(
        self,
        *columns: Any,
        joins: Sequence[tuple[Any, Any]] = (),
    ) -> Select:
        stmt = select(self.source.model, *columns)
        for target, onclause in joins:
            stmt = stmt.outerjoin(target, onclause)
        stmt = stmt.where(*self.criteria)
        ordering = self.ordering or _default_ordering(self.source)
        stmt = stmt.order_by(*ordering)
        if self.page is not None:
            stmt = stmt.offset(self.page.offset).limit(self.page.per_page)
        return stmt.execution_options(populate_existing=True)


QueryOption = Callable[[QueryBuilder], QueryBuilder]


def _default_ordering(source: QuerySource) -> tuple[Any, ...]:
    column = source.fields[source.default_sort].column
    if source.default_order == SORT_ASC:
        return (column.asc(), source.tiebreaker.asc())
    return (column.desc(), source.tiebreaker.desc())


def paginate(page: int | None, per_page: int | None) -> QueryOption:
    settings = get_settings()
    normalized_page = max(1, int(page or 1))
    normalized_per_page = int(per_page or 0)
    if normalized_per_page < 1:
        normalized_per_page = settings.page_default_per_page
    normalized_per_page = min(normalized_per_page, settings.page_max_per_page)

    def _option(builder: QueryBuilder) -> QueryBuilder:
        return replace(builder, page=Page(normalized_page, normalized_per_page))

    return _option


def sort(field_name: str | None, order: str | None = SORT_DESC) -> QueryOption:
    direction = SORT_ASC if (order or "").lower() == SORT_ASC else SORT_DESC

    def _option(builder: QueryBuilder) -> QueryBuilder:
        source = builder.source
        name = field_name or source.default_sort
        query_field = source.lookup(name)
        if query_field.column is None or not query_field.sortable:
            raise InvalidQueryError(f"{source.name} field is not sortable: {name}")
        column = query_field.column
        tiebreaker = source.tiebreaker
        if direction == SORT_ASC:
            ordering = (column.asc(), tiebreaker.asc())
        else:
            ordering = (column.desc(), tiebreaker.desc())
        return replace(builder, ordering=ordering)

    return _option


def match_tenant(tenant_id: str | None) -> QueryOption:
    def _option(builder: QueryBuilder) -> QueryBuilder:
        # An empty tenant means an administrative, cross-tenant read.
        if not tenant_id:
            return builder
        if builder.source.tenant_column is None:
            raise InvalidQueryError(f"{builder.source.name} is not tenant scoped")
        return builder.where(tenant_predicate(builder.source.model, tenant_id))

    return _option


def match(field_name: str, value: Any) -> QueryOption:
    def _option(builder: QueryBuilder) -> QueryBuilder:
        query_field = builder.source.lookup(field_name)
        if query_field.column is None:
            raise InvalidQueryError(f"{builder.source.name} field cannot be matched: {field_name}")
        return builder.where(query_field.column == value)

    return _option


def match_member(user_id: str) -> QueryOption:
    def _option(builder: QueryBuilder) -> QueryBuilder:
        predicate = builder.source.member_predicate
        if predicate is None:
            raise InvalidQueryError(f"{builder.source.name} has no members")
        return builder.where(predicate(user_id))

    return _option


def match_filters(filters: Any) -> QueryOption:
    # Accepts parsed nodes or the raw (optionally base64) payload.
    nodes = parse_filters(filters)

    def _option(builder: QueryBuilder) -> QueryBuilder:
        clause = build_clause(builder, nodes)
        if clause is None:
            return builder
        return builder.where(clause)

    return _option
