"""
Acceptance Gate: decides whether an inbound message is in scope at all.

A message is accepted when:
  - MSH-12 is 2.3 or 2.5.1 (case-insensitive), and
  - MSH-9 is ORU^R01^ORU_R01, where a missing component is "don't care".

The version-specific converter chosen here travels on the returned
AcceptanceDecision. The gate itself keeps no per-message state, so one gate
instance is safe to share across concurrently handled connections.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from .fhir_converter import DocumentConverter, converter_for_version
from .hl7_message import InboundMessage

logger = logging.getLogger("elr-receiver")

ACCEPTED_MESSAGE_TYPE: Tuple[str, str, str] = ("ORU", "R01", "ORU_R01")


@dataclass(frozen=True)
class AcceptanceDecision:
    """
    Result of the acceptance check.

    Attributes:
        accepted: True if the message should go on to filtering
        converter: Converter bound for this message (None when rejected)
        reason: Why the message was rejected, empty when accepted
    """
    accepted: bool
    converter: Optional[DocumentConverter] = None
    reason: str = ""

    def __bool__(self) -> bool:
        return self.accepted

    @classmethod
    def reject(cls, reason: str) -> "AcceptanceDecision":
        return cls(accepted=False, reason=reason)


class AcceptanceGate:
    """Checks protocol version and message type. No network or disk access."""

    def accept(self, message: InboundMessage) -> AcceptanceDecision:
        version = message.version
        converter = converter_for_version(version)
        if converter is None:
            logger.info(f"[GATE] Message received, but version {version!r} is not supported (2.3, 2.5.1)")
            return AcceptanceDecision.reject(f"unsupported version {version!r}")

        logger.info(f"[GATE] Message received with v{version}. Using {converter.name} converter")

        message_type = message.message_type
        for received, expected in zip(message_type, ACCEPTED_MESSAGE_TYPE):
            if received is not None and received.upper() != expected:
                shown = "^".join(part or "" for part in message_type)
                logger.info(f"[GATE] Correct version received, but not an ORU_R01 message. Received type: {shown}")
                return AcceptanceDecision.reject(f"unsupported message type {shown}")

        return AcceptanceDecision(accepted=True, converter=converter)
