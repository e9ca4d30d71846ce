"""
Inbound HL7 v2 message: a read-only, field-addressable view of one received record.

Grammar-level parsing is delegated to hl7apy. This module only exposes the
handful of addresses the pipeline needs:

    MSH-9   message type triple      (ORU^R01^ORU_R01)
    MSH-10  message control id
    MSH-12  version id
    PID     patient identification   (start of a patient-result group)
    OBR     observation request      (start of an order group)
    OBX     observation / result     (member of the current order group)

Field numbering follows the HL7 convention: for MSH, field 1 is the field
separator itself, so MSH-n is always ``segment.field(n)``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from hl7apy.parser import parse_message

from .exceptions import MessageParseError

logger = logging.getLogger("elr-receiver")

METADATA_CONTROL_ID = "/MSH-10"


def normalize_er7(text: str) -> str:
    """Strip surrounding whitespace and use CR as the only segment separator."""
    if not text or not text.strip():
        raise MessageParseError("empty message")
    return text.strip().replace("\r\n", "\r").replace("\n", "\r")


@dataclass(frozen=True)
class EncodingCharacters:
    field: str = "|"
    component: str = "^"
    repetition: str = "~"
    escape: str = "\\"
    subcomponent: str = "&"

    @classmethod
    def from_msh(cls, msh_er7: str) -> "EncodingCharacters":
        """Read MSH-1 and MSH-2 from the raw MSH segment text."""
        if len(msh_er7) < 8 or not msh_er7.startswith("MSH"):
            return cls()
        sep = msh_er7[3]
        enc = msh_er7[4:].split(sep, 1)[0]
        defaults = cls()
        return cls(
            field=sep,
            component=enc[0] if len(enc) > 0 else defaults.component,
            repetition=enc[1] if len(enc) > 1 else defaults.repetition,
            escape=enc[2] if len(enc) > 2 else defaults.escape,
            subcomponent=enc[3] if len(enc) > 3 else defaults.subcomponent,
        )


@dataclass(frozen=True)
class HL7Segment:
    """One segment; ``fields[n]`` is field n, ``fields[0]`` is the segment id."""
    name: str
    fields: Tuple[str, ...]
    encoding: EncodingCharacters = field(default_factory=EncodingCharacters)

    @classmethod
    def from_er7(cls, text: str, encoding: EncodingCharacters) -> "HL7Segment":
        parts = text.split(encoding.field)
        name = parts[0].strip()
        if name == "MSH":
            # MSH-1 is the separator, so shift everything right by one.
            parts = [name, encoding.field] + parts[1:]
        return cls(name=name, fields=tuple(parts), encoding=encoding)

    def field(self, n: int) -> str:
        if 0 <= n < len(self.fields):
            return self.fields[n]
        return ""

    def repetitions(self, n: int) -> List[str]:
        value = self.field(n)
        if not value:
            return []
        return value.split(self.encoding.repetition)

    def components(self, n: int, repetition: int = 0) -> List[str]:
        reps = self.repetitions(n)
        if repetition >= len(reps):
            return []
        return reps[repetition].split(self.encoding.component)

    def component(self, n: int, c: int, repetition: int = 0) -> str:
        """Component ``c`` (1-based) of field ``n``; empty string when absent."""
        comps = self.components(n, repetition)
        if 1 <= c <= len(comps):
            return comps[c - 1]
        return ""


@dataclass
class OrderObservation:
    """An OBR and the OBX observations that follow it."""
    order: Optional[HL7Segment] = None
    observations: List[HL7Segment] = field(default_factory=list)


@dataclass
class PatientResult:
    """A PID and the order groups reported for that patient."""
    patient: Optional[HL7Segment] = None
    orders: List[OrderObservation] = field(default_factory=list)


class InboundMessage:
    """
    Parsed inbound message. Owned by one pipeline invocation.

    Build with ``InboundMessage.from_er7(text)``.
    """

    def __init__(self, segments: List[HL7Segment], raw: str = ""):
        if not segments or segments[0].name != "MSH":
            raise MessageParseError("message does not start with an MSH segment")
        self._segments = list(segments)
        self.raw = raw

    @classmethod
    def from_er7(cls, text: str) -> "InboundMessage":
        """Parse ER7 (pipe-delimited) text. Raises MessageParseError."""
        er7 = normalize_er7(text)
        try:
            parsed = parse_message(er7, find_groups=False)
            segment_texts = [child.to_er7() for child in parsed.children]
        except Exception as e:
            raise MessageParseError(str(e)) from e

        if not segment_texts:
            raise MessageParseError("no segments found")

        encoding = EncodingCharacters.from_msh(segment_texts[0])
        segments = [HL7Segment.from_er7(s, encoding) for s in segment_texts]
        logger.debug(f"[HL7] Parsed {len(segments)} segments: {[s.name for s in segments]}")
        return cls(segments, raw=er7)

    @classmethod
    def from_header(cls, text: str) -> "InboundMessage":
        """
        Header-only view read straight from the raw MSH line.

        No grammar parsing happens here, so versions the parser does not know
        can still be gated and acknowledged by their own control id.
        """
        er7 = normalize_er7(text)
        msh = next((s for s in er7.split("\r") if s.startswith("MSH")), None)
        if msh is None:
            raise MessageParseError("no MSH segment found")
        return cls([HL7Segment.from_er7(msh, EncodingCharacters.from_msh(msh))], raw=er7)

    # ------------------------------------------------------------------
    # Header fields
    # ------------------------------------------------------------------

    @property
    def msh(self) -> HL7Segment:
        return self._segments[0]

    @property
    def encoding(self) -> EncodingCharacters:
        return self.msh.encoding

    @property
    def version(self) -> str:
        return self.msh.component(12, 1).strip()

    @property
    def message_type(self) -> Tuple[Optional[str], Optional[str], Optional[str]]:
        """MSH-9 components; a missing component is None."""
        return tuple(self.msh.component(9, i).strip() or None for i in (1, 2, 3))

    @property
    def control_id(self) -> str:
        return self.msh.field(10)

    @property
    def processing_id(self) -> str:
        return self.msh.component(11, 1) or "P"

    @property
    def sending_application(self) -> str:
        return self.msh.field(3)

    @property
    def sending_facility(self) -> str:
        return self.msh.field(4)

    @property
    def receiving_application(self) -> str:
        return self.msh.field(5)

    @property
    def receiving_facility(self) -> str:
        return self.msh.field(6)

    def metadata(self) -> Dict[str, str]:
        """What a transport listener hands along with the message."""
        return {METADATA_CONTROL_ID: self.control_id}

    # ------------------------------------------------------------------
    # Segment access
    # ------------------------------------------------------------------

    @property
    def all_segments(self) -> List[HL7Segment]:
        return list(self._segments)

    def segments(self, name: str) -> List[HL7Segment]:
        return [s for s in self._segments if s.name == name]

    def segment(self, name: str) -> Optional[HL7Segment]:
        found = self.segments(name)
        return found[0] if found else None

    def result_groups(self) -> List[PatientResult]:
        """
        Group segments as patient result → order observation → observation.

        PID opens a patient result, OBR opens an order, OBX joins the current
        order. Observations that appear before any PID/OBR still land in a
        group (with ``patient``/``order`` left as None).
        """
        groups: List[PatientResult] = []
        current_patient: Optional[PatientResult] = None
        current_order: Optional[OrderObservation] = None

        for seg in self._segments[1:]:
            if seg.name == "PID":
                current_patient = PatientResult(patient=seg)
                groups.append(current_patient)
                current_order = None
            elif seg.name == "OBR":
                if current_patient is None:
                    current_patient = PatientResult()
                    groups.append(current_patient)
                current_order = OrderObservation(order=seg)
                current_patient.orders.append(current_order)
            elif seg.name == "OBX":
                if current_patient is None:
                    current_patient = PatientResult()
                    groups.append(current_patient)
                if current_order is None:
                    current_order = OrderObservation()
                    current_patient.orders.append(current_order)
                current_order.observations.append(seg)

        return groups

    def observations(self) -> List[HL7Segment]:
        return self.segments("OBX")

    def __repr__(self) -> str:
        return (
            f"InboundMessage(version={self.version!r}, type={self.message_type!r}, "
            f"control_id={self.control_id!r}, segments={len(self._segments)})"
        )
