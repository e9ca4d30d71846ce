"""
Pydantic schemas for the filter specification document.

The filter document is a JSON file shaped like:

    {
      "version": "0.0.1",
      "filters": [
        {
          "conjunction": "OR",
          "segment_loc": "OBX-3",
          "segment_value": "94500-6^SARS-CoV-2 RNA^LN",
          "value_loc": "OBX-5",
          "value_type": "ST",
          "value_value": "Detected"
        }
      ]
    }
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


SUPPORTED_FILTER_VERSION = "0.0.1"


class Conjunction(str, Enum):
    AND = "AND"
    OR = "OR"


class ValueType(str, Enum):
    """OBX-5 comparison mode: plain string or structured numeric."""
    ST = "ST"
    SN = "SN"


class FilterRule(BaseModel):
    """One admission predicate against an OBX observation."""
    conjunction: Conjunction
    segment_loc: str = "OBX-3"
    segment_value: str
    value_loc: str = "OBX-5"
    value_type: ValueType = ValueType.ST
    value_value: str = ""

    @field_validator("conjunction", "value_type", mode="before")
    @classmethod
    def _upper(cls, value):
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("segment_loc", "value_loc", mode="before")
    @classmethod
    def _normalize_loc(cls, value):
        if isinstance(value, str):
            return value.strip().upper()
        return value


class FilterSpec(BaseModel):
    """Versioned, ordered set of filter rules. Immutable once loaded."""
    model_config = {"frozen": True}

    version: Optional[str] = None
    filters: List[FilterRule] = Field(default_factory=list)

    @property
    def is_supported(self) -> bool:
        return self.version == SUPPORTED_FILTER_VERSION
