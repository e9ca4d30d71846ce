"""
Identifier Resolver: picks the routing key for a clinical document.

Preference, over every Patient resource in the document:
    MR  (medical record number)       → IdentifierKind.MRN
    SS  (social security / national)  → IdentifierKind.NATIONAL_ID
    last identifier value seen        → IdentifierKind.FALLBACK

Within a kind the last matching identifier wins.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, Optional

from .fhir_converter import IDENTIFIER_TYPE_SYSTEM, LEGACY_IDENTIFIER_TYPE_SYSTEM

logger = logging.getLogger("elr-receiver")

IDENTIFIER_TYPE_SYSTEMS = (IDENTIFIER_TYPE_SYSTEM, LEGACY_IDENTIFIER_TYPE_SYSTEM)


class IdentifierKind(str, Enum):
    MRN = "MR"
    NATIONAL_ID = "SS"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class PatientIdentifier:
    value: str
    kind: IdentifierKind

    def __str__(self) -> str:
        return self.value


def _patients(document: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    for entry in document.get("entry") or []:
        resource = entry.get("resource") or {}
        if resource.get("resourceType") == "Patient":
            yield resource


def _type_codes(identifier: Dict[str, Any]) -> Iterator[str]:
    for coding in (identifier.get("type") or {}).get("coding") or []:
        if coding.get("system") in IDENTIFIER_TYPE_SYSTEMS and coding.get("code"):
            yield coding["code"].upper()


def resolve(document: Dict[str, Any]) -> Optional[PatientIdentifier]:
    """Return the best identifier for the document's patient, or None."""
    mrn = national_id = fallback = None

    for patient in _patients(document):
        for identifier in patient.get("identifier") or []:
            value = (identifier.get("value") or "").strip()
            if not value:
                continue
            codes = set(_type_codes(identifier))
            if "MR" in codes:
                mrn = value
            if "SS" in codes:
                national_id = value
            fallback = value

    if mrn:
        return PatientIdentifier(mrn, IdentifierKind.MRN)
    if national_id:
        return PatientIdentifier(national_id, IdentifierKind.NATIONAL_ID)
    if fallback:
        logger.info(f"[RESOLVE] No MR or SS identifier; using {fallback!r}")
        return PatientIdentifier(fallback, IdentifierKind.FALLBACK)

    logger.error(f"[RESOLVE] No patient identifier in document {document.get('id')}. Not forwarding")
    return None
