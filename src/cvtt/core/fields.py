"""
Column header parsing for extra ContentVersion fields.

A manifest column is either a plain field (``Description``), a lookup through
an external id on the parent (``FirstPublishLocation.External_Id__c``) or a
polymorphic lookup naming the parent type
(``FirstPublishLocationId:Account.External_Id__c``).
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Union


@dataclass(frozen=True)
class FlatField:
    """A field written as-is on the record"""

    name: str

    @property
    def column(self) -> str:
        return self.name

    def render(self, value: str) -> Dict[str, Any]:
        return {self.name: value}


@dataclass(frozen=True)
class NestedLookup:
    """Relationship field resolved through a field on the parent"""

    field: str
    parent_field: str

    @property
    def column(self) -> str:
        return f"{self.field}.{self.parent_field}"

    def render(self, value: str) -> Dict[str, Any]:
        return {self.field: {self.parent_field: value}}


@dataclass(frozen=True)
class PolymorphicLookup:
    """Relationship field whose parent type has to be named explicitly"""

    field: str
    parent_type: str
    parent_field: str

    @property
    def column(self) -> str:
        return f"{self.field}:{self.parent_type}.{self.parent_field}"

    def render(self, value: str) -> Dict[str, Any]:
        return {
            self.field: {
                "attributes": {"type": self.parent_type},
                self.parent_field: value,
            }
        }


FieldSpec = Union[FlatField, NestedLookup, PolymorphicLookup]


def parse_field(header: str) -> FieldSpec:
    """
    Parse one column header into a field spec

    Args:
        header: Column name from the manifest

    Returns:
        FlatField, NestedLookup or PolymorphicLookup

    Raises:
        ValueError: If the header is empty or malformed
    """
    header = header.strip()
    if not header:
        raise ValueError("Column name must not be empty")

    if ":" in header:
        field, _, rest = header.partition(":")
        parent_type, dot, parent_field = rest.partition(".")
        if not (field and parent_type and dot and parent_field):
            raise ValueError(
                f"Invalid polymorphic lookup column '{header}'. "
                "Expected Field:ParentType.ParentField"
            )
        return PolymorphicLookup(field, parent_type, parent_field)

    if "." in header:
        field, _, parent_field = header.partition(".")
        if not field or not parent_field or "." in parent_field:
            raise ValueError(
                f"Invalid lookup column '{header}'. Expected Field.ParentField"
            )
        return NestedLookup(field, parent_field)

    return FlatField(header)


def _target(spec: FieldSpec) -> str:
    """Top-level key the spec writes on the record"""
    return spec.name if isinstance(spec, FlatField) else spec.field


def parse_fields(headers: Iterable[str]) -> Dict[str, FieldSpec]:
    """
    Parse every header once, keyed by the original column name

    Raises:
        ValueError: If a header is malformed or two columns write the same
            field (e.g. ``Owner.Email`` and ``Owner.Name``)
    """
    specs: Dict[str, FieldSpec] = {}
    targets: Dict[str, str] = {}
    for header in headers:
        spec = parse_field(header)
        target = _target(spec)
        if target in targets:
            raise ValueError(
                f"Columns '{targets[target]}' and '{header}' both set {target}; "
                "a relationship can only be matched on one field"
            )
        targets[target] = header
        specs[header] = spec
    return specs


def render_fields(specs: Dict[str, FieldSpec], values: Dict[str, str]) -> Dict[str, Any]:
    """
    Build the JSON attributes for one record from its extra columns

    Empty values are left out so that lookups are not sent blank.
    """
    rendered: Dict[str, Any] = {}
    for column, spec in specs.items():
        value = values.get(column)
        if value is None or value == "":
            continue
        rendered.update(spec.render(value))
    return rendered
