"""
FHIR Converter: turns an accepted ORU^R01 message into FHIR R4 message bundles.

This is the default "grammar parser" collaborator the Acceptance Gate binds
per version. Each patient-result group of the message becomes one envelope:

    Bundle (type=message)
    ├── entry[0]  MessageHeader   focus[0] → urn:uuid:<document>
    └── entry[1]  Bundle (type=document, fullUrl=urn:uuid:<document>)
                  ├── Patient       (from PID, zero or one)
                  └── Observation   (one per OBX)

The mapping is intentionally small: it covers what routing and the registry
need (patient identifiers, observation codes and values), not the full
ELR implementation guide.
"""

import logging
import re
import uuid
from abc import ABC
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Type

from .hl7_message import HL7Segment, InboundMessage, OrderObservation, PatientResult

logger = logging.getLogger("elr-receiver")

# ==============================================================================
# TERMINOLOGY
# ==============================================================================

IDENTIFIER_TYPE_SYSTEM = "http://terminology.hl7.org/CodeSystem/v2-0203"
LEGACY_IDENTIFIER_TYPE_SYSTEM = "http://hl7.org/fhir/v2/0203"
MESSAGE_EVENT_SYSTEM = "http://terminology.hl7.org/CodeSystem/v2-0003"

CODING_SYSTEMS = {
    "LN": "http://loinc.org",
    "SCT": "http://snomed.info/sct",
    "SNM": "http://snomed.info/sct",
    "I10": "http://hl7.org/fhir/sid/icd-10",
    "UCUM": "http://unitsofmeasure.org",
    "HL70078": "http://terminology.hl7.org/CodeSystem/v2-0078",
}

GENDER_MAP = {
    "M": "male",
    "F": "female",
    "O": "other",
    "A": "other",
    "U": "unknown",
    "N": "unknown",
}

OBSERVATION_STATUS_MAP = {
    "F": "final",
    "C": "corrected",
    "P": "preliminary",
    "R": "registered",
    "I": "registered",
    "X": "cancelled",
    "D": "entered-in-error",
    "W": "entered-in-error",
}


def normalize_date(ts: Optional[str]) -> str:
    """
    Normalize an HL7 TS/DTM value to FHIR date or dateTime.

    20240105          -> 2024-01-05
    20240105134500-0500 -> 2024-01-05T13:45:00-05:00
    A time without a zone is reduced to its date, since FHIR dateTime
    requires a zone once a time is present.
    """
    if not ts:
        return ""

    match = re.match(r"^(\d{4})(\d{2})?(\d{2})?(\d{2})?(\d{2})?(\d{2})?(?:\.\d+)?([+-]\d{4})?$", ts.strip())
    if not match:
        return ""

    year, month, day, hour, minute, second, zone = match.groups()
    if not month:
        return year
    if not day:
        return f"{year}-{month}"
    date_part = f"{year}-{month}-{day}"
    if not hour or not zone:
        return date_part
    return f"{date_part}T{hour}:{minute or '00'}:{second or '00'}{zone[:3]}:{zone[3:]}"


def coding_system(code: str) -> str:
    """Map an HL7 v2 coding-system mnemonic to a FHIR system URI."""
    if not code:
        return ""
    return CODING_SYSTEMS.get(code.upper(), code)


def codeable_concept(components: List[str]) -> Dict[str, Any]:
    """Build a CodeableConcept from CE/CWE components (code^text^system^alt...)."""
    def part(i: int) -> str:
        return components[i] if i < len(components) else ""

    codings = []
    for code, display, system in ((part(0), part(1), part(2)), (part(3), part(4), part(5))):
        if not code and not display:
            continue
        coding = {}
        if system:
            coding["system"] = coding_system(system)
        if code:
            coding["code"] = code
        if display:
            coding["display"] = display
        codings.append(coding)

    concept: Dict[str, Any] = {"coding": codings}
    if part(1):
        concept["text"] = part(1)
    return concept


def _number(value: str) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


# ==============================================================================
# BASE CONVERTER
# ==============================================================================

class DocumentConverter(ABC):
    """
    Converts an inbound message into FHIR R4 message bundles.

    Subclasses pin the HL7 version they understand and may override the
    per-segment hooks where that version differs.
    """

    version = "0.0"
    name = "base"

    def execute_parser(self, message: InboundMessage) -> List[Dict[str, Any]]:
        """Return one message-type envelope bundle per patient-result group."""
        bundles = []
        for group in message.result_groups():
            bundles.append(self.build_message_bundle(message, group))
        logger.info(f"[FHIR] {self.name}: {len(bundles)} message bundle(s) from control id {message.control_id}")
        return bundles

    # ------------------------------------------------------------------
    # Envelope
    # ------------------------------------------------------------------

    def build_message_bundle(self, message: InboundMessage, group: PatientResult) -> Dict[str, Any]:
        document = self.build_document_bundle(group)
        document_url = f"urn:uuid:{document['id']}"
        header_id = str(uuid.uuid4())
        trigger = message.message_type[1] or "R01"

        header = {
            "resourceType": "MessageHeader",
            "id": header_id,
            "eventCoding": {"system": MESSAGE_EVENT_SYSTEM, "code": trigger},
            "source": {
                "name": message.msh.component(3, 1) or "unknown",
                "endpoint": f"urn:hl7v2:{message.msh.component(4, 1) or 'unknown'}",
            },
            "focus": [{"reference": document_url}],
        }

        return {
            "resourceType": "Bundle",
            "id": str(uuid.uuid4()),
            "type": "message",
            "timestamp": self._now(),
            "entry": [
                {"fullUrl": f"urn:uuid:{header_id}", "resource": header},
                {"fullUrl": document_url, "resource": document},
            ],
        }

    def build_document_bundle(self, group: PatientResult) -> Dict[str, Any]:
        entries = []
        patient_url = None

        if group.patient is not None:
            patient = self.build_patient(group.patient)
            patient_url = f"urn:uuid:{patient['id']}"
            entries.append({"fullUrl": patient_url, "resource": patient})

        for order in group.orders:
            for obx in order.observations:
                observation = self.build_observation(obx, order, patient_url)
                entries.append({"fullUrl": f"urn:uuid:{observation['id']}", "resource": observation})

        return {
            "resourceType": "Bundle",
            "id": str(uuid.uuid4()),
            "type": "document",
            "timestamp": self._now(),
            "entry": entries,
        }

    # ------------------------------------------------------------------
    # Patient (PID)
    # ------------------------------------------------------------------

    def build_patient(self, pid: HL7Segment) -> Dict[str, Any]:
        patient: Dict[str, Any] = {
            "resourceType": "Patient",
            "id": str(uuid.uuid4()),
            "identifier": self.patient_identifiers(pid),
        }

        names = []
        for i in range(len(pid.repetitions(5))):
            family = pid.component(5, 1, i)
            given = [g for g in (pid.component(5, 2, i), pid.component(5, 3, i)) if g]
            if family or given:
                name: Dict[str, Any] = {}
                if family:
                    name["family"] = family
                if given:
                    name["given"] = given
                names.append(name)
        if names:
            patient["name"] = names

        birth_date = normalize_date(pid.component(7, 1))
        if birth_date:
            patient["birthDate"] = birth_date[:10]

        gender = GENDER_MAP.get(pid.component(8, 1).upper())
        if gender:
            patient["gender"] = gender

        return patient

    def patient_identifiers(self, pid: HL7Segment) -> List[Dict[str, Any]]:
        """PID-3 patient identifier list (CX: id^check^scheme^authority^type)."""
        identifiers = []
        for i in range(len(pid.repetitions(3))):
            identifier = self.cx_identifier(pid, 3, i)
            if identifier:
                identifiers.append(identifier)
        return identifiers

    def cx_identifier(self, seg: HL7Segment, n: int, repetition: int, default_type: str = "") -> Optional[Dict[str, Any]]:
        value = seg.component(n, 1, repetition)
        if not value:
            return None

        identifier: Dict[str, Any] = {"value": value}
        type_code = seg.component(n, 5, repetition) or default_type
        if type_code:
            identifier["type"] = {
                "coding": [{"system": IDENTIFIER_TYPE_SYSTEM, "code": type_code}]
            }

        authority = seg.component(n, 4, repetition)
        if authority:
            # HD namespace is the first subcomponent.
            identifier["assigner"] = {"display": authority.split(seg.encoding.subcomponent)[0]}
        return identifier

    # ------------------------------------------------------------------
    # Observation (OBX)
    # ------------------------------------------------------------------

    def build_observation(
        self,
        obx: HL7Segment,
        order: OrderObservation,
        patient_url: Optional[str],
    ) -> Dict[str, Any]:
        observation: Dict[str, Any] = {
            "resourceType": "Observation",
            "id": str(uuid.uuid4()),
            "status": OBSERVATION_STATUS_MAP.get(obx.component(11, 1).upper(), "final"),
            "code": codeable_concept(obx.components(3)),
        }

        if patient_url:
            observation["subject"] = {"reference": patient_url}

        effective = normalize_date(obx.component(14, 1))
        if not effective and order.order is not None:
            effective = normalize_date(order.order.component(7, 1))
        if effective:
            observation["effectiveDateTime"] = effective

        observation.update(self.observation_value(obx))

        interpretation = obx.component(8, 1)
        if interpretation:
            observation["interpretation"] = [{
                "coding": [{
                    "system": "http://terminology.hl7.org/CodeSystem/v3-ObservationInterpretation",
                    "code": interpretation,
                }]
            }]

        return observation

    def observation_value(self, obx: HL7Segment) -> Dict[str, Any]:
        """value[x] chosen by OBX-2 value type."""
        value_type = obx.component(2, 1).upper()
        repetitions = obx.repetitions(5)
        if not repetitions:
            return {}

        unit = obx.component(6, 1)

        if value_type == "NM":
            number = _number(obx.component(5, 1))
            if number is None:
                return {"valueString": repetitions[0]}
            quantity: Dict[str, Any] = {"value": number}
            if unit:
                quantity["unit"] = unit
            return {"valueQuantity": quantity}

        if value_type == "SN":
            comparator, num1, separator, num2 = (obx.components(5) + ["", "", "", ""])[:4]
            first, second = _number(num1), _number(num2)
            if separator in (":", "/") and first is not None and second is not None:
                return {"valueRatio": {"numerator": {"value": first}, "denominator": {"value": second}}}
            if first is not None:
                quantity = {"value": first}
                if comparator in ("<", "<=", ">", ">="):
                    quantity["comparator"] = comparator
                if unit:
                    quantity["unit"] = unit
                return {"valueQuantity": quantity}
            return {"valueString": repetitions[0]}

        if value_type in ("CE", "CWE", "CNE"):
            return {"valueCodeableConcept": codeable_concept(obx.components(5))}

        return {"valueString": " ".join(r for r in repetitions if r)}

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()


# ==============================================================================
# VERSION-SPECIFIC CONVERTERS
# ==============================================================================

class HL7v251FhirR4Converter(DocumentConverter):
    """HL7 v2.5.1 ELR (LRI/ELR implementation guide) to FHIR R4."""

    version = "2.5.1"
    name = "HL7v251FhirR4"


class HL7v23FhirR4Converter(DocumentConverter):
    """
    HL7 v2.3 to FHIR R4.

    v2.3 senders still populate PID-2 (external patient id) and PID-19
    (social security number), so both are carried as identifiers.
    """

    version = "2.3"
    name = "HL7v23FhirR4"

    def patient_identifiers(self, pid: HL7Segment) -> List[Dict[str, Any]]:
        identifiers = super().patient_identifiers(pid)

        external = self.cx_identifier(pid, 2, 0)
        if external:
            identifiers.append(external)

        ssn = pid.component(19, 1)
        if ssn:
            identifiers.append({
                "value": ssn,
                "type": {"coding": [{"system": IDENTIFIER_TYPE_SYSTEM, "code": "SS"}]},
            })
        return identifiers


# ==============================================================================
# REGISTRY
# ==============================================================================

CONVERTERS: Dict[str, Type[DocumentConverter]] = {
    HL7v23FhirR4Converter.version: HL7v23FhirR4Converter,
    HL7v251FhirR4Converter.version: HL7v251FhirR4Converter,
}


def supported_versions() -> List[str]:
    return list(CONVERTERS.keys())


def converter_for_version(version: Optional[str]) -> Optional[DocumentConverter]:
    """Return a fresh converter for an HL7 version, or None if unsupported."""
    if not version:
        return None
    converter_cls = CONVERTERS.get(version.strip().lower())
    if converter_cls is None:
        return None
    return converter_cls()
