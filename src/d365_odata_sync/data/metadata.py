# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
EDMX (``$metadata``) parsing.

Turns the service metadata document into one
:class:`~d365_odata_sync.models.entity.EntityDescriptor` per entity set.
Handles entity type inheritance (Dataverse types derive from
``crmbaseentity``), composite keys (common in Finance & Operations) and the
``Org.OData.Capabilities.V1.ChangeTracking`` annotation in both its inline and
out-of-line (``<Annotations Target=...>``) forms.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from typing import Dict, List, Optional, Tuple

from ..core import _error_codes as ec
from ..core.errors import MetadataError
from ..models.entity import EntityDescriptor, FieldDescriptor, NavigationProperty, detect_modified_field

logger = logging.getLogger(__name__)

CHANGE_TRACKING_TERM = "Org.OData.Capabilities.V1.ChangeTracking"


def _local(tag: str) -> str:
    """Strip the XML namespace from a tag name."""
    return tag.rsplit("}", 1)[-1]


def _children(element: ET.Element, name: str) -> List[ET.Element]:
    return [child for child in element if _local(child.tag) == name]


def _is_true(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() == "true"


class _TypeInfo:
    __slots__ = ("name", "base", "keys", "fields", "navigation")

    def __init__(self, name: str, base: Optional[str]) -> None:
        self.name = name
        self.base = base
        self.keys: List[str] = []
        self.fields: List[FieldDescriptor] = []
        self.navigation: List[NavigationProperty] = []


def _change_tracking_supported(annotation: ET.Element) -> bool:
    """Read ``Supported`` from a ChangeTracking annotation (``Bool`` attribute or nested record)."""
    if annotation.get("Bool") is not None:
        return _is_true(annotation.get("Bool"), False)
    for record in annotation.iter():
        if _local(record.tag) != "PropertyValue" or record.get("Property") != "Supported":
            continue
        if record.get("Bool") is not None:
            return _is_true(record.get("Bool"), False)
        for child in record:
            if _local(child.tag) == "Bool":
                return _is_true(child.text, False)
    return False


def _parse_entity_type(element: ET.Element, qualified: str) -> _TypeInfo:
    info = _TypeInfo(qualified, element.get("BaseType"))
    for child in element:
        tag = _local(child.tag)
        if tag == "Key":
            info.keys = [ref.get("Name") for ref in _children(child, "PropertyRef") if ref.get("Name")]
        elif tag == "Property" and child.get("Name"):
            info.fields.append(
                FieldDescriptor(
                    name=child.get("Name"),
                    edm_type=child.get("Type") or "Edm.String",
                    nullable=_is_true(child.get("Nullable"), True),
                )
            )
        elif tag == "NavigationProperty" and child.get("Name"):
            raw_type = child.get("Type") or ""
            is_collection = raw_type.startswith("Collection(")
            target = raw_type[len("Collection("):-1] if is_collection else raw_type
            info.navigation.append(
                NavigationProperty(name=child.get("Name"), target_type=target, is_collection=is_collection)
            )
    return info


def _resolve(
    qualified: str, types: Dict[str, _TypeInfo]
) -> Tuple[List[str], List[FieldDescriptor], List[NavigationProperty]]:
    """Flatten a type with its base types, base members first."""
    chain: List[_TypeInfo] = []
    seen = set()
    current = types.get(qualified)
    while current is not None and current.name not in seen:
        seen.add(current.name)
        chain.append(current)
        current = types.get(current.base) if current.base else None

    keys: List[str] = []
    fields: List[FieldDescriptor] = []
    navigation: List[NavigationProperty] = []
    names = set()
    for info in reversed(chain):
        if info.keys:
            keys = list(info.keys)
        for f in info.fields:
            if f.name not in names:
                names.add(f.name)
                fields.append(f)
        navigation.extend(info.navigation)
    return keys, fields, navigation


def parse_metadata(document: "str | bytes") -> Dict[str, EntityDescriptor]:
    """
    Parse an EDMX document.

    :param document: ``$metadata`` XML text or bytes.
    :return: Entity set name to descriptor, in container order.
    :rtype: dict[str, EntityDescriptor]
    :raises MetadataError: ``metadata_unparseable`` when the XML is malformed or declares no entity sets.
    """
    try:
        root = ET.fromstring(document)
    except ET.ParseError as exc:
        raise MetadataError(f"Unparseable $metadata document: {exc}", subcode=ec.METADATA_UNPARSEABLE) from exc

    types: Dict[str, _TypeInfo] = {}
    aliases: Dict[str, str] = {}
    entity_sets: List[Tuple[str, str, str, ET.Element]] = []
    tracked_targets: Dict[str, bool] = {}

    for schema in root.iter():
        if _local(schema.tag) != "Schema":
            continue
        namespace = schema.get("Namespace", "")
        if schema.get("Alias"):
            aliases[schema.get("Alias")] = namespace
        for element in schema:
            tag = _local(element.tag)
            if tag == "EntityType" and element.get("Name"):
                qualified = f"{namespace}.{element.get('Name')}"
                types[qualified] = _parse_entity_type(element, qualified)
            elif tag == "EntityContainer":
                container = f"{namespace}.{element.get('Name', '')}"
                for entity_set in _children(element, "EntitySet"):
                    if entity_set.get("Name") and entity_set.get("EntityType"):
                        entity_sets.append(
                            (container, entity_set.get("Name"), entity_set.get("EntityType"), entity_set)
                        )
            elif tag == "Annotations" and element.get("Target"):
                for annotation in _children(element, "Annotation"):
                    if annotation.get("Term") == CHANGE_TRACKING_TERM:
                        tracked_targets[element.get("Target")] = _change_tracking_supported(annotation)

    if not entity_sets:
        raise MetadataError("$metadata declares no entity sets", subcode=ec.METADATA_UNPARSEABLE)

    def unalias(name: str) -> str:
        prefix, _, rest = name.rpartition(".")
        return f"{aliases[prefix]}.{rest}" if prefix in aliases else name

    for info in types.values():
        if info.base:
            info.base = unalias(info.base)

    descriptors: Dict[str, EntityDescriptor] = {}
    for container, set_name, type_name, element in entity_sets:
        qualified = unalias(type_name)
        if qualified not in types:
            logger.debug("Entity set %s references unknown type %s", set_name, type_name)
            continue
        keys, fields, navigation = _resolve(qualified, types)

        supported = tracked_targets.get(f"{container}/{set_name}", False)
        for annotation in _children(element, "Annotation"):
            if annotation.get("Term") == CHANGE_TRACKING_TERM:
                supported = _change_tracking_supported(annotation)

        fields_tuple = tuple(fields)
        descriptors[set_name] = EntityDescriptor(
            logical_name=qualified.rsplit(".", 1)[-1],
            entity_set_name=set_name,
            primary_key_field=keys[0] if keys else None,
            key_fields=tuple(keys),
            fields=fields_tuple,
            navigation_properties=tuple(navigation),
            supports_change_tracking=supported,
            modified_field=detect_modified_field(fields_tuple),
        )

    logger.info("Parsed $metadata: %d entity sets", len(descriptors))
    return descriptors


__all__ = ["parse_metadata", "CHANGE_TRACKING_TERM"]
