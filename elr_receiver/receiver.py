"""
Receiving application: the per-message pipeline.

    Received → Gated(accepted|rejected) → [Filtered(pass|fail)]
             → [Delivered(ok|failed)] → Acknowledged

Every message ends acknowledged. Gate rejections, filter failures and
unresolvable documents get a positive acknowledgment with no downstream
call. Delivery failures raise ReceivingApplicationError, which the
transport boundary turns into a negative acknowledgment via
process_exception().
"""

import logging
import threading
from typing import Any, Dict, Mapping, Optional

from .acceptance import AcceptanceGate
from .ack import build_ack, build_response
from .clients.registry_client import RegistryClient
from .document_extractor import extract
from .exceptions import MessageParseError, ReceivingApplicationError
from .filter_engine import FilterEngine, FilterVerdict
from .hl7_message import InboundMessage
from .identifier_resolver import resolve
from .schemas import FilterSpec

logger = logging.getLogger("elr-receiver")

STAT_KEYS = (
    "received",
    "rejected",
    "filtered",
    "documents",
    "delivered",
    "delivery_failures",
    "unresolved",
    "parse_errors",
    "naks",
)


class ELRReceiverApplication:
    """
    Shared by every request worker. Holds no per-message state; the
    converter chosen by the gate travels on the AcceptanceDecision.
    """

    def __init__(
        self,
        client: RegistryClient,
        filter_spec: Optional[FilterSpec],
        gate: Optional[AcceptanceGate] = None,
        engine: Optional[FilterEngine] = None,
    ):
        self.client = client
        self.filter_spec = filter_spec
        self.gate = gate or AcceptanceGate()
        self.engine = engine or FilterEngine()

        self._stats = {key: 0 for key in STAT_KEYS}
        self._stats_lock = threading.Lock()

    def _count(self, key: str, amount: int = 1) -> None:
        with self._stats_lock:
            self._stats[key] += amount

    def stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            snapshot = dict(self._stats)
        snapshot["queue_depth"] = self.client.queue.size()
        return snapshot

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def process_message(self, message: InboundMessage, metadata: Optional[Mapping[str, str]] = None) -> str:
        """
        Run one message through the pipeline and return its acknowledgment.

        Raises ReceivingApplicationError after every document was attempted
        if any delivery failed. The failed payloads are already queued.
        """
        self._count("received")

        decision = self.gate.accept(message)
        if not decision:
            self._count("rejected")
            return build_ack(message, "AA")

        verdict = self.engine.evaluate_verdict(message, self.filter_spec)
        if verdict is not FilterVerdict.PASS:
            self._count("filtered")
            return build_ack(message, "AA")

        bundles = decision.converter.execute_parser(message)
        documents = extract(bundles)
        self._count("documents", len(documents))

        failures = []
        for document in documents:
            identifier = resolve(document)
            if identifier is None:
                self._count("unresolved")
                continue

            logger.info(f"[PIPELINE] Sending document for patient {identifier.kind.value} {identifier.value}")
            outcome = self.client.submit(document, identifier)
            if outcome.accepted:
                self._count("delivered")
            else:
                self._count("delivery_failures")
                failures.append(outcome)

        if failures:
            raise ReceivingApplicationError(failures)

        return build_ack(message, "AA")

    def process_exception(
        self,
        incoming: Optional[InboundMessage],
        metadata: Optional[Mapping[str, str]],
        outgoing: Optional[str],
        error: Optional[BaseException],
    ) -> str:
        """Transport-boundary hook: existing ACK, or a synthetic NAK."""
        if not outgoing:
            self._count("naks")
        return build_response(incoming, metadata, outgoing, error)

    def handle_er7(self, text: str) -> str:
        """
        Gate, parse, process and acknowledge raw ER7 text. Never raises.

        The gate runs on the raw MSH line before grammar parsing, so an
        out-of-scope version still gets its ACK, and a parse failure still
        echoes the sender's control id.
        """
        try:
            header = InboundMessage.from_header(text)
        except MessageParseError as e:
            logger.error(f"[PIPELINE] {e}")
            self._count("parse_errors")
            return self.process_exception(None, {}, None, e)

        metadata = header.metadata()
        if not self.gate.accept(header):
            self._count("received")
            self._count("rejected")
            return self.process_exception(header, metadata, build_ack(header, "AA"), None)

        try:
            message = InboundMessage.from_er7(text)
        except MessageParseError as e:
            logger.error(f"[PIPELINE] Control id {header.control_id}: {e}")
            self._count("parse_errors")
            return self.process_exception(header, metadata, None, e)

        try:
            outgoing = self.process_message(message, metadata)
        except ReceivingApplicationError as e:
            return self.process_exception(message, metadata, None, e)
        except Exception as e:
            logger.exception(f"[PIPELINE] Unexpected error processing {message.control_id}: {e}")
            return self.process_exception(message, metadata, None, e)

        return self.process_exception(message, metadata, outgoing, None)

    def handle_bytes(self, body: bytes, charset: str = "utf-8") -> str:
        """Decode a request body strictly, then handle it. Undecodable bodies get a NAK."""
        try:
            text = body.decode(charset)
        except (UnicodeDecodeError, LookupError) as e:
            error = MessageParseError(f"body is not valid {charset} text ({e})")
            logger.error(f"[PIPELINE] {error}")
            self._count("parse_errors")
            # Latin-1 maps every byte, enough to recover MSH-10 for the NAK.
            metadata: Dict[str, str] = {}
            try:
                metadata = InboundMessage.from_header(body.decode("latin-1")).metadata()
            except MessageParseError:
                logger.warning("[PIPELINE] No MSH segment in undecodable body")
            return self.process_exception(None, metadata, None, error)
        return self.handle_er7(text)
