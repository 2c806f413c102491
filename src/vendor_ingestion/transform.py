from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Sequence

from pydantic import BaseModel, ConfigDict

from vendor_ingestion.domain import TransformedRow
from vendor_ingestion.errors import (
    MalformedValueError,
    MissingRequiredFieldError,
    SystemicTransformError,
    TransformError,
)
from vendor_ingestion.type_casters import TypeCasterSpec

logger = logging.getLogger(__name__)

_MISSING = object()


class VendorFieldSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # Candidate keys in priority order; dots walk into nested objects ("location.lat")
    source_keys: list[str]
    type_caster: TypeCasterSpec
    required: bool = False


# TransformedRow field -> how to read it from a raw vendor record
# "enrichment.*" keys are only present when per-vendor enrichment ran; listing keys win
VENDOR_FIELDS: dict[str, VendorFieldSpec] = {
    name: VendorFieldSpec.model_validate(spec)
    for name, spec in {
        "vendor_id": {
            "source_keys": ["code", "id", "vendor_code"],
            "type_caster": {"output_type": "string"},
            "required": True,
        },
        "name": {
            "source_keys": ["name", "enrichment.details.name"],
            "type_caster": {"output_type": "string", "accept_numbers": False},
            "required": True,
        },
        "rating": {
            "source_keys": ["rating", "ratings.average", "enrichment.details.rating", "enrichment.ratings.average"],
            "type_caster": {"output_type": "float", "min_value": 0.0, "max_value": 5.0},
        },
        "delivery_fee": {
            "source_keys": [
                "minimum_delivery_fee",
                "delivery_fee",
                "delivery_fee.amount",
                "enrichment.details.minimum_delivery_fee",
            ],
            "type_caster": {"output_type": "float", "min_value": 0.0},
        },
        "categories": {
            "source_keys": ["cuisines", "categories", "food_characteristics", "enrichment.details.cuisines"],
            "type_caster": {"output_type": "string_list", "item_key": "name"},
        },
        "latitude": {
            "source_keys": ["latitude", "location.latitude", "location.lat", "enrichment.details.latitude"],
            "type_caster": {"output_type": "float", "min_value": -90.0, "max_value": 90.0},
        },
        "longitude": {
            "source_keys": ["longitude", "location.longitude", "location.lng", "enrichment.details.longitude"],
            "type_caster": {"output_type": "float", "min_value": -180.0, "max_value": 180.0},
        },
    }.items()
}


def _lookup(raw: dict[str, Any], dotted_key: str) -> Any:
    node: Any = raw
    for part in dotted_key.split("."):
        if not isinstance(node, dict) or part not in node:
            return _MISSING
        node = node[part]
    return node


def read_field(raw: dict[str, Any], field_name: str, spec: VendorFieldSpec) -> Any:
    """
    First candidate key that yields a usable value wins. Optional fields fall back to
    None; required fields raise MissingRequiredFieldError saying why nothing was usable.
    """
    problem = "absent"
    for key in spec.source_keys:
        value = _lookup(raw, key)
        if value is _MISSING:
            continue
        try:
            cast_value = spec.type_caster.cast(value)
        except MalformedValueError as e:
            problem = f"wrong-typed ({key}: {e})"
            continue
        if cast_value is None or cast_value == "":
            problem = f"empty ({key})"
            continue
        return cast_value

    if spec.required:
        raise MissingRequiredFieldError(field_name, problem)
    return None


def transform_record(raw: Any, city_id: str, fetched_at: datetime) -> TransformedRow:
    """Map one raw vendor JSON object onto the fixed row schema. Pure; raises TransformError only."""
    if not isinstance(raw, dict):
        raise MalformedValueError(f"Vendor record is a {type(raw).__name__}, not a JSON object")

    try:
        values = {name: read_field(raw, name, spec) for name, spec in VENDOR_FIELDS.items()}
    except TransformError:
        raise
    except (TypeError, ValueError, AttributeError) as e:
        raise MalformedValueError(f"Unreadable vendor record: {e}") from e

    return TransformedRow(city_id=city_id, fetched_at=fetched_at, **values)


@dataclass
class PageTransform:
    rows: list[TransformedRow] = field(default_factory=list)
    dropped: int = 0
    drop_reasons: dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.rows) + self.dropped


def transform_page(
    records: Sequence[Any],
    city_id: str,
    fetched_at: datetime,
    max_drop_fraction: float,
) -> PageTransform:
    """
    Transform one page in API order. Dropped records are counted by error kind; a page
    dropping more than max_drop_fraction of its records raises SystemicTransformError.
    """
    result = PageTransform()
    for index, raw in enumerate(records):
        try:
            result.rows.append(transform_record(raw, city_id, fetched_at))
        except TransformError as e:
            result.dropped += 1
            result.drop_reasons[e.kind] = result.drop_reasons.get(e.kind, 0) + 1
            logger.debug("City %s: dropped record #%s: %s", city_id, index, e)

    if records and result.dropped / len(records) > max_drop_fraction:
        error = SystemicTransformError(
            f"City {city_id}: dropped {result.dropped} of {len(records)} records on one page "
            f"(limit {max_drop_fraction:.0%})",
            drop_reasons=dict(result.drop_reasons),
        )
        raise error

    return result
