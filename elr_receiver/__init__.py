"""
ELR Receiver

HL7 v2 electronic lab reporting gateway: accepts ORU^R01 messages, filters
them, converts them to FHIR and forwards them to the registry controller,
with a durable retry queue for failed deliveries.
"""

from .acceptance import AcceptanceDecision, AcceptanceGate
from .ack import build_ack, build_response
from .clients.registry_client import DeliveryOutcome, DeliveryStatus, RegistryClient
from .exceptions import (
    ConfigurationError,
    ELRReceiverError,
    MalformedQueueEntryError,
    MessageParseError,
    ReceivingApplicationError,
)
from .filter_engine import FilterEngine, FilterVerdict
from .hl7_message import InboundMessage
from .identifier_resolver import IdentifierKind, PatientIdentifier
from .receiver import ELRReceiverApplication
from .retry_drainer import DrainResult, RetryDrainer
from .retry_queue import RetryQueue
from .schemas import FilterRule, FilterSpec

__version__ = "1.0.0"

__all__ = [
    "AcceptanceDecision",
    "AcceptanceGate",
    "ConfigurationError",
    "DeliveryOutcome",
    "DeliveryStatus",
    "DrainResult",
    "ELRReceiverApplication",
    "ELRReceiverError",
    "FilterEngine",
    "FilterRule",
    "FilterSpec",
    "FilterVerdict",
    "IdentifierKind",
    "InboundMessage",
    "MalformedQueueEntryError",
    "MessageParseError",
    "PatientIdentifier",
    "ReceivingApplicationError",
    "RegistryClient",
    "RetryDrainer",
    "RetryQueue",
    "build_ack",
    "build_response",
]
