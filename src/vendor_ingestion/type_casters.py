import math
from abc import ABC, abstractmethod
from typing import Any, Literal, Union
from typing_extensions import Annotated

from pydantic import BaseModel, ConfigDict, Field, model_validator

from vendor_ingestion.errors import MalformedValueError


class CasterBase(BaseModel, ABC):
    """
    Reads one loosely typed JSON value into a strict Python value.

    cast() returns None for JSON null and null tokens ("", "N/A", ...), the cast value
    otherwise, and raises MalformedValueError for anything it cannot interpret. It never
    lets a TypeError/ValueError escape.
    """
    model_config = ConfigDict(extra="forbid", frozen=True)
    output_type: str
    null_strings: frozenset[str] = Field(default_factory=lambda: frozenset({"", "NULL", "N/A", "NA", "NONE"}))

    @abstractmethod
    def _cast(self, value: Any) -> Any: ...

    def is_null(self, value: Any) -> bool:
        if value is None:
            return True
        return isinstance(value, str) and value.strip().upper() in self.null_strings

    def cast(self, value: Any) -> Any:
        if self.is_null(value):
            return None
        try:
            return self._cast(value)
        except MalformedValueError:
            raise
        except (TypeError, ValueError, OverflowError) as e:
            raise MalformedValueError(f"Cannot read {value!r} as {self.output_type}: {e}") from e


class StringCaster(CasterBase):
    output_type: Literal["string"] = "string"
    # Upstream ids are sometimes numbers
    accept_numbers: bool = True
    max_length: int | None = None

    def _cast(self, value: Any) -> str:
        if isinstance(value, bool):
            raise MalformedValueError(f"Expected string, got boolean {value!r}")
        if isinstance(value, int) and self.accept_numbers:
            value = str(value)
        if not isinstance(value, str):
            raise MalformedValueError(f"Expected string, got {type(value).__name__}")

        text = value.strip()
        if self.max_length is not None and len(text) > self.max_length:
            raise MalformedValueError(f"String exceeds max length {self.max_length}")
        return text


class FloatCaster(CasterBase):
    output_type: Literal["float"] = "float"
    min_value: float | None = None
    max_value: float | None = None

    @model_validator(mode="after")
    def check_bounds(self) -> "FloatCaster":
        if self.min_value is not None and self.max_value is not None and self.min_value > self.max_value:
            raise ValueError("min_value must not exceed max_value")
        return self

    def _cast(self, value: Any) -> float:
        if isinstance(value, bool):
            raise MalformedValueError(f"Expected number, got boolean {value!r}")
        if isinstance(value, (int, float)):
            number = float(value)
        elif isinstance(value, str):
            number = float(value.strip().replace(",", ""))
        else:
            raise MalformedValueError(f"Expected number, got {type(value).__name__}")

        if math.isnan(number) or math.isinf(number):
            raise MalformedValueError(f"Non-finite number {value!r}")
        if self.min_value is not None and number < self.min_value:
            raise MalformedValueError(f"{number} is below {self.min_value}")
        if self.max_value is not None and number > self.max_value:
            raise MalformedValueError(f"{number} is above {self.max_value}")
        return number


class StringListCaster(CasterBase):
    """
    Lists of strings, or lists of objects from which item_key is read
    (e.g. cuisines: [{"id": 3, "name": "Pizza"}]). A comma separated string is split.
    Items that are not readable are skipped rather than failing the list.
    """
    output_type: Literal["string_list"] = "string_list"
    item_key: str | None = None

    def _item(self, item: Any) -> str | None:
        if isinstance(item, dict) and self.item_key is not None:
            item = item.get(self.item_key)
        if isinstance(item, str) and item.strip():
            return item.strip()
        return None

    def _cast(self, value: Any) -> list[str]:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        if not isinstance(value, list):
            raise MalformedValueError(f"Expected list, got {type(value).__name__}")

        out: list[str] = []
        for item in value:
            text = self._item(item)
            if text is not None:
                out.append(text)
        return out


TypeCasterSpec = Annotated[
    Union[StringCaster, FloatCaster, StringListCaster],
    Field(discriminator="output_type"),
]
