"""
Exceptions for the ELR receiver.

Exception Hierarchy:
    ELRReceiverError (base)
    ├── ConfigurationError          → unusable settings or filter document
    ├── MessageParseError           → inbound text is not a parseable HL7 v2 message
    ├── ReceivingApplicationError   → downstream delivery failed for a message
    └── MalformedQueueEntryError    → retry queue entry cannot be decoded

Admission and extraction misses are NOT exceptions. They are named outcomes
returned by the component that detects them (see acceptance.py,
filter_engine.py, identifier_resolver.py).
"""

from typing import List, Optional


class ELRReceiverError(Exception):
    """
    Base exception for all receiver errors.

    Attributes:
        message: Human-readable error description
        context: Additional debugging context
    """

    def __init__(self, message: str, context: Optional[dict] = None):
        self.message = message
        self.context = context or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} [{context_str}]"
        return self.message


class ConfigurationError(ELRReceiverError):
    """Settings or the filter specification could not be loaded."""

    pass


class MessageParseError(ELRReceiverError):
    """
    Raw inbound text could not be parsed into an HL7 v2 message.

    Attributes:
        reason: Parser error text
    """

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Unable to parse HL7 v2 message: {reason}")


class ReceivingApplicationError(ELRReceiverError):
    """
    Delivery of one or more documents to the registry failed.

    The failed payloads are already in the retry queue when this is raised.
    The transport boundary turns it into a negative acknowledgment for the
    triggering message.

    Attributes:
        outcomes: DeliveryOutcome for every failed document
    """

    def __init__(self, outcomes: List):
        self.outcomes = list(outcomes)
        text = " ".join(o.message for o in self.outcomes if o.message).strip()
        # No context suffix: this text ends up in the ERR segment verbatim.
        super().__init__(text or "Sending to FHIR controller failed")


class MalformedQueueEntryError(ELRReceiverError):
    """
    A retry queue entry could not be decoded into a submission payload.

    Attributes:
        reason: Why decoding failed
    """

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Malformed retry queue entry: {reason}")
