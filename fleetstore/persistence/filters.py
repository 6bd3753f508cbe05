from __future__ import annotations

import base64
import binascii
import json
from typing import TYPE_CHECKING, Annotated, Any, Literal, Sequence, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator, model_validator
from sqlalchemy import and_, or_
from sqlalchemy.sql.elements import ColumnElement

from fleetstore.core.errors import FilterParseError, InvalidQueryError

if TYPE_CHECKING:
    from fleetstore.persistence.query import QueryBuilder


_TRUE_STRINGS = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_STRINGS = {"0", "f", "F", "FALSE", "false", "False"}

# Names that always carry a boolean value, whether or not they map to a column.
VIRTUAL_BOOL_FIELDS = frozenset({"online", "active"})


def coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        if value in _TRUE_STRINGS:
            return True
        if value in _FALSE_STRINGS:
            return False
    raise ValueError(f"unsupported value for boolean comparison: {value!r}")


def coerce_number(value: Any) -> int | float:
    if isinstance(value, bool):
        raise ValueError("unsupported value for numeric comparison: bool")
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            pass
        try:
            return float(value)
        except ValueError:
            pass
    raise ValueError(f"unsupported value for numeric comparison: {value!r}")


class PropertyParams(BaseModel):
    name: str = Field(min_length=1)
    operator: Literal["contains", "eq", "ne", "bool", "gt"]
    value: Any = None

    @model_validator(mode="after")
    def _coerce_value(self) -> "PropertyParams":
        # Coercion happens here so bad client input fails before any query is built.
        if self.name in VIRTUAL_BOOL_FIELDS or self.operator == "bool":
            self.value = coerce_bool(self.value)
        elif self.operator == "gt":
            self.value = coerce_number(self.value)
        elif self.operator == "contains":
            if isinstance(self.value, list):
                if not all(isinstance(item, str) for item in self.value):
                    raise ValueError("contains list values must be strings")
            elif not isinstance(self.value, str):
                raise ValueError(f"unsupported value for contains comparison: {self.value!r}")
        return self


class OperatorParams(BaseModel):
    name: Literal["and", "or"]

    @field_validator("name", mode="before")
    @classmethod
    def _lower(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value


class PropertyFilter(BaseModel):
    type: Literal["property"]
    params: PropertyParams


class OperatorFilter(BaseModel):
    type: Literal["operator"]
    params: OperatorParams


FilterNode = Annotated[Union[PropertyFilter, OperatorFilter], Field(discriminator="type")]
_NODES = TypeAdapter(list[FilterNode])


def _decode(raw: str | bytes) -> Any:
    text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
    text = text.strip()
    if not text:
        return []
    if not text.startswith("["):
        try:
            text = base64.b64decode(text, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise FilterParseError("filter is neither JSON nor base64 encoded JSON") from exc
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise FilterParseError(f"filter is not valid JSON: {exc.msg}") from exc


def parse_filters(raw: Any) -> list[PropertyFilter | OperatorFilter]:
    if raw is None:
        return []
    if isinstance(raw, list) and all(isinstance(node, (PropertyFilter, OperatorFilter)) for node in raw):
        return list(raw)
    data = _decode(raw) if isinstance(raw, (str, bytes)) else raw
    try:
        return _NODES.validate_python(data)
    except ValidationError as exc:
        raise FilterParseError(f"invalid filter: {exc.errors(include_url=False)}") from exc


def _property_clause(builder: "QueryBuilder", params: PropertyParams) -> ColumnElement:
    query_field = builder.source.lookup(params.name)
    if query_field.predicate is not None:
        return query_field.predicate(builder, params.value)
    value = params.value
    operator = params.operator
    if operator == "contains":
        if isinstance(value, list):
            if query_field.contains_all is None:
                raise InvalidQueryError(f"{builder.source.name} field does not hold a list: {params.name}")
            return query_field.contains_all(value)
        if query_field.column is None:
            # Set-valued field queried with a single string: membership of that value.
            return query_field.contains_all([value])
        return query_field.column.icontains(value, autoescape=True)
    if query_field.column is None:
        raise InvalidQueryError(f"{builder.source.name} field only supports contains: {params.name}")
    if operator == "gt":
        return query_field.column > value
    if operator == "ne":
        return query_field.column != value
    # eq and bool both end in equality; bool already coerced its value.
    return query_field.column == value


def build_clause(builder: "QueryBuilder", nodes: Sequence[PropertyFilter | OperatorFilter]) -> ColumnElement | None:
    # Properties accumulate until an operator node combines them; groups are ANDed
    # together and any trailing properties without an operator are ORed.
    groups: list[ColumnElement] = []
    pending: list[ColumnElement] = []
    for node in nodes:
        if isinstance(node, PropertyFilter):
            pending.append(_property_clause(builder, node.params))
            continue
        if not pending:
            continue
        combine = and_ if node.params.name == "and" else or_
        groups.append(combine(*pending))
        pending = []
    if pending:
        groups.append(or_(*pending))
    if not groups:
        return None
    return and_(*groups)
