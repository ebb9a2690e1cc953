"""
Fill a Manjaro category's attribute schema from a Lazada product's free-form
attributes, creating missing attribute values on the backend.
"""

import logging
from collections.abc import Mapping
from typing import Protocol

from listing_models import AttributeAssignment, SpecInfo

logger = logging.getLogger(__name__)

DEFAULT_COLOR = "Other"
DEFAULT_SIZE = "Standard"
DEFAULT_VALUE = "Other"


class SpecValueCreator(Protocol):
    def add_spec_value(self, cate_id: str, spec_id: str, value_name: str) -> str | None: ...


def choose_value(attribute_name: str, source_attributes: Mapping[str, str]) -> str:
    """Name heuristics: colour -> colour family / colour, size -> size / variation."""
    attrs = {k.lower(): v for k, v in source_attributes.items() if v}
    name = attribute_name.lower()
    if "color" in name:
        return attrs.get("color family") or attrs.get("color") or DEFAULT_COLOR
    if "size" in name:
        return attrs.get("size") or attrs.get("variation") or DEFAULT_SIZE
    return DEFAULT_VALUE


def map_specifications(
    cate_id: str,
    specs: list[SpecInfo],
    source_attributes: Mapping[str, str],
    creator: SpecValueCreator,
) -> list[AttributeAssignment]:
    """
    One assignment per schema attribute, in schema order. An attribute whose
    value neither exists nor can be created is left out.
    """
    assignments = []
    for spec in specs:
        value_name = choose_value(spec.attribute_name, source_attributes)
        existing = spec.find_value(value_name)
        if existing is not None:
            value_id = existing.value_id
        else:
            logger.info("Adding spec value: %s = %s", spec.attribute_name, value_name)
            value_id = creator.add_spec_value(cate_id, spec.attribute_id, value_name)
            if not value_id:
                logger.warning("Could not create value %r for %s, skipping", value_name, spec.attribute_name)
                continue
        assignments.append(
            AttributeAssignment(
                attribute_id=spec.attribute_id,
                attribute_name=spec.attribute_name,
                value_id=value_id,
                value_name=value_name,
            )
        )
    return assignments
