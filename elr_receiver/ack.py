"""
Response Builder: acknowledgments returned to the sender.

    build_ack       positive (AA) acknowledgment for a processed message
    build_response  returns an existing acknowledgment unchanged, or builds
                    the synthetic negative acknowledgment:

    MSH|^~\\&|ELR_RECEIVER|PACER-CLIENT|||<ts>||ACK^R01^ACK|<id>|P|2.5.1
    MSA|AE|<control id of the triggering message>
    ERR|||^^^^^^^^<failure text>|E
"""

import logging
import random
from datetime import datetime
from typing import Mapping, Optional

from .hl7_message import METADATA_CONTROL_ID, InboundMessage

logger = logging.getLogger("elr-receiver")

SENDING_APPLICATION = "ELR_RECEIVER"
SENDING_FACILITY = "PACER-CLIENT"
NAK_VERSION = "2.5.1"
SEGMENT_SEPARATOR = "\r"


def hl7_timestamp(now: Optional[datetime] = None) -> str:
    """yyyyMMddHHmmss.SSSS+zzzz in local time."""
    now = (now or datetime.now()).astimezone()
    return f"{now:%Y%m%d%H%M%S}.{now.microsecond // 100:04d}{now:%z}"


def generate_control_id() -> str:
    return str(100 + random.randint(0, 99999))


def escape_text(text: str) -> str:
    """Escape HL7 delimiters so free text fits in one component."""
    escaped = (
        text.replace("\\", "\\E\\")
        .replace("|", "\\F\\")
        .replace("^", "\\S\\")
        .replace("&", "\\T\\")
        .replace("~", "\\R\\")
    )
    return escaped.replace("\r\n", " ").replace("\r", " ").replace("\n", " ")


def build_ack(message: InboundMessage, ack_code: str = "AA", text: str = "") -> str:
    """Acknowledge ``message`` with sender and receiver swapped."""
    enc = message.encoding
    encoding_chars = enc.component + enc.repetition + enc.escape + enc.subcomponent
    msh = enc.field.join([
        "MSH",
        encoding_chars,
        message.receiving_application,
        message.receiving_facility,
        message.sending_application,
        message.sending_facility,
        hl7_timestamp(),
        "",
        enc.component.join(["ACK", message.message_type[1] or "R01", "ACK"]),
        generate_control_id(),
        message.processing_id,
        message.version or NAK_VERSION,
    ])
    msa = enc.field.join(["MSA", ack_code, message.control_id] + ([escape_text(text)] if text else []))
    return msh + SEGMENT_SEPARATOR + msa


def build_nak(control_id: str, error_text: str) -> str:
    msh = "|".join([
        "MSH",
        "^~\\&",
        SENDING_APPLICATION,
        SENDING_FACILITY,
        "",
        "",
        hl7_timestamp(),
        "",
        "ACK^R01^ACK",
        generate_control_id(),
        "P",
        NAK_VERSION,
    ])
    msa = f"MSA|AE|{control_id}"
    err = f"ERR|||^^^^^^^^{escape_text(error_text)}|E"
    return SEGMENT_SEPARATOR.join([msh, msa, err])


def build_response(
    incoming: Optional[InboundMessage],
    metadata: Optional[Mapping[str, str]],
    outgoing: Optional[str],
    error: Optional[BaseException],
) -> str:
    """
    Final acknowledgment for a request.

    ``outgoing`` wins when present. Otherwise a NAK is built whose MSA-2 is
    the triggering control id, taken from the listener metadata first and the
    parsed message second.
    """
    if outgoing:
        return outgoing

    control_id = (metadata or {}).get(METADATA_CONTROL_ID) or ""
    if not control_id and incoming is not None:
        control_id = incoming.control_id

    error_text = str(error) if error is not None else "Message could not be processed"
    logger.warning(f"[ACK] Sending NAK for control id {control_id!r}: {error_text}")
    return build_nak(control_id, error_text)
