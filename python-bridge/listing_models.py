"""
Data shapes shared by the Lazada -> Manjaro Supply migration bridge.
"""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class ProductRecord:
    """A source listing as handed over by the listing extractor. Read-only input."""

    url: str
    title: str | None = None
    price_text: str | None = None
    original_price_text: str | None = None
    images: tuple[str, ...] = ()
    source_category_label: str | None = None
    attributes: dict[str, str] = field(default_factory=dict)
    description_text: str | None = None
    packing_list_text: str | None = None
    dimensions_text: str | None = None
    weight_text: str | None = None


@dataclass(frozen=True)
class TargetCategory:
    id: str
    display_name: str
    full_path_label: str


@dataclass(frozen=True)
class SpecValue:
    value_id: str
    value_name: str


@dataclass(frozen=True)
class SpecInfo:
    """One attribute of a category schema (colour, size, ...) with its known values."""

    attribute_id: str
    attribute_name: str
    existing_values: tuple[SpecValue, ...] = ()

    def find_value(self, value_name: str) -> SpecValue | None:
        for value in self.existing_values:
            if value.value_name == value_name:
                return value
        return None


@dataclass(frozen=True)
class AttributeAssignment:
    attribute_id: str
    attribute_name: str
    value_id: str
    value_name: str


@dataclass(frozen=True)
class ShippingTemplate:
    id: str
    name: str
    trans_type: str


@dataclass(frozen=True)
class SubmissionResult:
    success: bool
    created_id: str | None = None
    error_message: str | None = None

    @classmethod
    def ok(cls, created_id: str | None) -> "SubmissionResult":
        return cls(success=True, created_id=created_id)

    @classmethod
    def failed(cls, message: str) -> "SubmissionResult":
        return cls(success=False, error_message=message)
