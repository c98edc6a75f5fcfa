# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Entity metadata types produced by parsing the service ``$metadata`` document.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

# Last-modified fields checked, in order, when metadata does not say which to use.
MODIFIED_FIELD_CANDIDATES = (
    "modifiedon",
    "ModifiedDateTime",
    "ModifiedDateTime1",
    "ModifiedOn",
    "modifieddatetime",
)


@dataclass(frozen=True)
class FieldDescriptor:
    """
    A structural property of an entity type.

    :param name: Property name as it appears in payloads.
    :type name: str
    :param edm_type: Declared type, e.g. ``"Edm.String"`` or an enum type name.
    :type edm_type: str
    :param nullable: Whether the property may be null (EDM default is True).
    :type nullable: bool
    """

    name: str
    edm_type: str
    nullable: bool = True

    @property
    def is_collection(self) -> bool:
        return self.edm_type.startswith("Collection(")

    @property
    def short_type(self) -> str:
        return self.edm_type.replace("Edm.", "")


@dataclass(frozen=True)
class NavigationProperty:
    """An expandable relationship to another entity type."""

    name: str
    target_type: str
    is_collection: bool = False

    def describe(self) -> str:
        target = self.target_type.rsplit(".", 1)[-1]
        return f"{self.name} -> [{target}]" if self.is_collection else f"{self.name} -> {target}"


@dataclass(frozen=True)
class EntityDescriptor:
    """
    Immutable description of an entity set and its entity type.

    :param logical_name: Entity type name (e.g. ``"account"``, ``"CustomerV3"``).
    :type logical_name: str
    :param entity_set_name: Entity set used in URLs (e.g. ``"accounts"``, ``"CustomersV3"``).
    :type entity_set_name: str
    :param primary_key_field: First key property.
    :type primary_key_field: str
    :param key_fields: All key properties in declaration order (F&O keys are often composite).
    :type key_fields: tuple[str, ...]
    :param fields: Structural properties in declaration order, base type first.
    :type fields: tuple[FieldDescriptor, ...]
    :param navigation_properties: Expandable navigation properties.
    :type navigation_properties: tuple[NavigationProperty, ...]
    :param supports_change_tracking: Whether the entity set advertises change tracking.
    :type supports_change_tracking: bool
    :param modified_field: Last-modified timestamp property, if one was found.
    :type modified_field: str or None
    """

    logical_name: str
    entity_set_name: str
    primary_key_field: Optional[str]
    key_fields: Tuple[str, ...] = ()
    fields: Tuple[FieldDescriptor, ...] = ()
    navigation_properties: Tuple[NavigationProperty, ...] = ()
    supports_change_tracking: bool = False
    modified_field: Optional[str] = None
    _field_index: Dict[str, FieldDescriptor] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_field_index", {f.name: f for f in self.fields})

    def get_field(self, name: str) -> Optional[FieldDescriptor]:
        return self._field_index.get(name)

    def has_field(self, name: str) -> bool:
        return name in self._field_index

    @property
    def navigation_names(self) -> Tuple[str, ...]:
        return tuple(n.name for n in self.navigation_properties)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "logical_name": self.logical_name,
            "entity_set_name": self.entity_set_name,
            "primary_key_field": self.primary_key_field,
            "key_fields": list(self.key_fields),
            "fields": [
                {"name": f.name, "type": f.edm_type, "nullable": f.nullable} for f in self.fields
            ],
            "navigation_properties": [
                {"name": n.name, "target": n.target_type, "collection": n.is_collection}
                for n in self.navigation_properties
            ],
            "supports_change_tracking": self.supports_change_tracking,
            "modified_field": self.modified_field,
        }


def detect_modified_field(fields: Tuple[FieldDescriptor, ...]) -> Optional[str]:
    """Pick the last-modified timestamp property from well-known names."""
    by_name = {f.name: f for f in fields}
    for candidate in MODIFIED_FIELD_CANDIDATES:
        descriptor = by_name.get(candidate)
        if descriptor is not None and descriptor.edm_type == "Edm.DateTimeOffset":
            return candidate
    return None


__all__ = ["FieldDescriptor", "NavigationProperty", "EntityDescriptor", "detect_modified_field"]
