"""
Filter Engine: evaluates the declarative filter specification against a message.

Rules are evaluated in declared order and combined with short-circuiting:

    running = False
    rule 1            → running = match(rule 1)
    AND rule          → abandon the rest if running is already False,
                        otherwise running = running and match(rule)
    OR rule           → running = running or match(rule)
    after each rule   → AND leaving running False, or OR leaving it True,
                        abandons the remaining rules

A rule matches when some OBX in the message has the rule's OBX-3 identifier
AND a value in OBX-5 satisfying the rule's value test.

A missing specification, or one whose version is not 0.0.1, fails closed:
nothing is forwarded.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from .hl7_message import HL7Segment, InboundMessage
from .schemas import SUPPORTED_FILTER_VERSION, Conjunction, FilterRule, FilterSpec, ValueType

logger = logging.getLogger("elr-receiver")

RULE_SEPARATOR = "^"
IDENTIFIER_LOCATION = "OBX-3"
VALUE_LOCATION = "OBX-5"


class FilterVerdict(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    SPEC_MISSING = "spec_missing"
    SPEC_VERSION_UNSUPPORTED = "spec_version_unsupported"


@dataclass(frozen=True)
class ObservationIdentifier:
    """OBX-3 triple a rule looks for. ``system`` None means "any system"."""
    code: str
    text: str
    system: Optional[str] = None

    @classmethod
    def from_rule(cls, segment_value: str) -> Optional["ObservationIdentifier"]:
        parts = segment_value.split(RULE_SEPARATOR)
        if len(parts) < 2:
            return None
        code, text = parts[0], parts[1]
        if not code.strip() and not text.strip():
            return None
        system = parts[2] if len(parts) > 2 and parts[2] else None
        return cls(code=code, text=text, system=system)

    def matches(self, obx: HL7Segment) -> bool:
        components = obx.components(3)
        code = components[0] if len(components) > 0 else ""
        text = components[1] if len(components) > 1 else ""
        if code != self.code or text != self.text:
            return False
        if self.system is None:
            return True
        system = components[2] if len(components) > 2 else ""
        return system == self.system


def structured_numeric_ratio(parts: List[str]) -> Optional[float]:
    """
    Ratio of an SN value ``comparator^num1^separator^num2`` as num2 / num1.

    Returns None when either number is missing or not numeric, or num1 is 0.
    """
    if len(parts) < 4:
        return None
    try:
        first = float(parts[1])
        second = float(parts[3])
    except ValueError:
        return None
    if first == 0:
        return None
    return second / first


def compare_ratio(observed: float, target: float, comparator: str) -> bool:
    comparator = comparator.strip()
    if comparator in ("<", "<="):
        return observed <= target or math.isclose(observed, target)
    if comparator in (">", ">="):
        return observed >= target or math.isclose(observed, target)
    return math.isclose(observed, target)


class FilterEngine:
    """Stateless evaluator; one instance can serve every request."""

    def evaluate(self, message: InboundMessage, spec: Optional[FilterSpec]) -> bool:
        """True only when the message passes the filter specification."""
        return self.evaluate_verdict(message, spec) is FilterVerdict.PASS

    def evaluate_verdict(self, message: InboundMessage, spec: Optional[FilterSpec]) -> FilterVerdict:
        if spec is None:
            logger.error(
                f"[FILTER] No filter specification loaded. Message {message.control_id} will not be forwarded"
            )
            return FilterVerdict.SPEC_MISSING

        if not spec.is_supported:
            logger.error(
                f"[FILTER] Filter specification version {spec.version!r} is not supported "
                f"(expected {SUPPORTED_FILTER_VERSION}). Message {message.control_id} will not be forwarded"
            )
            return FilterVerdict.SPEC_VERSION_UNSUPPORTED

        result = False
        for index, rule in enumerate(spec.filters):
            if index > 0 and rule.conjunction is Conjunction.AND and not result:
                break

            matched = self.evaluate_rule(message, rule)
            if index == 0:
                result = matched
            elif rule.conjunction is Conjunction.AND:
                result = result and matched
            else:
                result = result or matched

            logger.debug(f"[FILTER] Rule {index} ({rule.conjunction.value} {rule.segment_value}) -> {matched}")

            if rule.conjunction is Conjunction.AND and not result:
                break
            if rule.conjunction is Conjunction.OR and result:
                break

        if result:
            logger.info(f"[FILTER] Message {message.control_id} passed the filter")
            return FilterVerdict.PASS

        logger.info(f"[FILTER] Message {message.control_id} did not pass the filter. Not forwarding")
        return FilterVerdict.FAIL

    # ------------------------------------------------------------------
    # Single rule
    # ------------------------------------------------------------------

    def evaluate_rule(self, message: InboundMessage, rule: FilterRule) -> bool:
        if rule.segment_loc != IDENTIFIER_LOCATION or rule.value_loc != VALUE_LOCATION:
            logger.warning(
                f"[FILTER] Unsupported rule location {rule.segment_loc}/{rule.value_loc}; "
                f"only {IDENTIFIER_LOCATION}/{VALUE_LOCATION} is implemented. Skipping rule"
            )
            return False

        identifier = ObservationIdentifier.from_rule(rule.segment_value)
        if identifier is None:
            logger.warning(f"[FILTER] Rule identifier {rule.segment_value!r} is incomplete. Skipping rule")
            return False

        for group in message.result_groups():
            for order in group.orders:
                for obx in order.observations:
                    if identifier.matches(obx) and self.value_matches(obx, rule):
                        return True
        return False

    def value_matches(self, obx: HL7Segment, rule: FilterRule) -> bool:
        if rule.value_type is ValueType.ST:
            expected = rule.value_value.casefold()
            return any(rep.casefold() == expected for rep in obx.repetitions(5))

        target_parts = rule.value_value.split(RULE_SEPARATOR)
        target = structured_numeric_ratio(target_parts)
        if target is None:
            logger.warning(f"[FILTER] SN rule value {rule.value_value!r} is not comparator^num1^separator^num2")
            return False

        comparator = target_parts[0]
        for rep in obx.repetitions(5):
            observed = structured_numeric_ratio(rep.split(obx.encoding.component))
            if observed is not None and compare_ratio(observed, target, comparator):
                return True
        return False
