import pytest

from elr_receiver.filter_engine import FilterEngine, FilterVerdict, compare_ratio, structured_numeric_ratio
from elr_receiver.schemas import FilterSpec

from .conftest import DETECTED_RULE, MSH_251, OBR, OBX_DETECTED, PID_MR_SS, build_message

TITER = "5196-1^Titer^LN"
UNEVALUATED = "NEVER^EVALUATED"


def spec(*rules, version="0.0.1") -> FilterSpec:
    return FilterSpec.model_validate({"version": version, "filters": list(rules)})


def rule(conjunction="OR", segment_value=DETECTED_RULE["segment_value"], value_type="ST", value_value="Detected", **extra):
    return {
        "conjunction": conjunction,
        "segment_loc": extra.get("segment_loc", "OBX-3"),
        "segment_value": segment_value,
        "value_loc": extra.get("value_loc", "OBX-5"),
        "value_type": value_type,
        "value_value": value_value,
    }


def titer_message(value: str):
    return build_message(MSH_251, PID_MR_SS, OBR, f"OBX|1|SN|{TITER}||{value}||||||F")


class RecordingEngine(FilterEngine):
    """Fails the test if a rule that should be short-circuited is evaluated."""

    def __init__(self):
        self.evaluated = []

    def evaluate_rule(self, message, rule):
        self.evaluated.append(rule.segment_value)
        if rule.segment_value == UNEVALUATED:
            raise AssertionError("rule should have been short-circuited")
        return super().evaluate_rule(message, rule)


@pytest.fixture
def engine():
    return FilterEngine()


@pytest.fixture
def detected():
    return build_message(MSH_251, PID_MR_SS, OBR, OBX_DETECTED)


# ------------------------------------------------------------------
# Fail closed
# ------------------------------------------------------------------

def test_missing_spec_fails_closed(engine, detected):
    assert engine.evaluate_verdict(detected, None) is FilterVerdict.SPEC_MISSING
    assert engine.evaluate(detected, None) is False


@pytest.mark.parametrize("version", ["0.0.2", "1.0", None])
def test_unsupported_version_fails_closed(engine, detected, version):
    unsupported = spec(rule(), version=version)
    assert engine.evaluate_verdict(detected, unsupported) is FilterVerdict.SPEC_VERSION_UNSUPPORTED
    assert not engine.evaluate(detected, unsupported)


def test_empty_rule_list_passes_nothing(engine, detected):
    assert engine.evaluate_verdict(detected, spec()) is FilterVerdict.FAIL


# ------------------------------------------------------------------
# String values
# ------------------------------------------------------------------

def test_string_match_passes(engine, detected):
    assert engine.evaluate_verdict(detected, spec(rule())) is FilterVerdict.PASS


@pytest.mark.parametrize("expected", ["detected", "DETECTED", "DeTeCtEd"])
def test_string_match_ignores_case(engine, detected, expected):
    assert engine.evaluate(detected, spec(rule(value_value=expected)))


def test_string_match_checks_every_repetition(engine):
    message = build_message(MSH_251, PID_MR_SS, OBR, "OBX|1|ST|94500-6^SARS-CoV-2 RNA^LN||Inconclusive~Detected||||||F")
    assert engine.evaluate(message, spec(rule()))


def test_string_mismatch_fails(engine, detected):
    assert not engine.evaluate(detected, spec(rule(value_value="Not detected")))


# ------------------------------------------------------------------
# Observation identifier
# ------------------------------------------------------------------

def test_identifier_without_system_matches_any_system(engine, detected):
    assert engine.evaluate(detected, spec(rule(segment_value="94500-6^SARS-CoV-2 RNA")))


def test_identifier_system_must_match_when_given(engine, detected):
    assert not engine.evaluate(detected, spec(rule(segment_value="94500-6^SARS-CoV-2 RNA^SCT")))


def test_identifier_text_is_exact(engine, detected):
    assert not engine.evaluate(detected, spec(rule(segment_value="94500-6^sars-cov-2 rna^LN")))


@pytest.mark.parametrize("segment_value", ["94500-6", "^", " ^ ^LN", ""])
def test_incomplete_identifier_never_matches(engine, detected, segment_value):
    assert not engine.evaluate(detected, spec(rule(segment_value=segment_value)))


def test_other_locations_never_match(engine, detected):
    assert not engine.evaluate(detected, spec(rule(segment_loc="OBX-4")))
    assert not engine.evaluate(detected, spec(rule(value_loc="OBX-8")))


def test_locations_are_normalized(engine, detected):
    assert engine.evaluate(detected, spec(rule(segment_loc=" obx-3", value_loc="obx-5 ")))


def test_later_observation_can_match(engine):
    message = build_message(
        MSH_251,
        PID_MR_SS,
        "OBR|1||ORD1|1234-5^Other^LN",
        "OBX|1|ST|1234-5^Other^LN||Negative||||||F",
        "PID|2||555^^^HOSP^MR",
        OBR,
        OBX_DETECTED,
    )
    assert engine.evaluate(message, spec(rule()))


# ------------------------------------------------------------------
# Structured numeric values
# ------------------------------------------------------------------

@pytest.mark.parametrize(
    "observed, comparator, expected",
    [
        ("^2^:^3", "<=", True),    # 1.5 <= 2
        ("^2^:^5", "<=", False),   # 2.5 <= 2
        ("^2^:^3", "<", True),
        ("^2^:^5", ">=", True),
        ("^2^:^5", ">", True),
        ("^2^:^3", ">", False),
        ("^1^:^2", "=", True),
        ("^1^:^2", "", True),
        ("^2^:^3", "=", False),
        ("^1^:^2", "<=", True),    # equal counts for <=
    ],
)
def test_structured_numeric_ratios(engine, observed, comparator, expected):
    sn_rule = rule(segment_value=TITER, value_type="SN", value_value=f"{comparator}^1^:^2")
    assert engine.evaluate(titer_message(observed), spec(sn_rule)) is expected


@pytest.mark.parametrize("observed", ["^0^:^3", "^abc^:^3", "^2^:^", "^150", "Positive"])
def test_unusable_observed_ratio_never_matches(engine, observed):
    sn_rule = rule(segment_value=TITER, value_type="SN", value_value=">=^1^:^0")
    assert not engine.evaluate(titer_message(observed), spec(sn_rule))


@pytest.mark.parametrize("target", ["<=^0^:^2", "<=^x^:^2", "<=", ""])
def test_unusable_rule_ratio_never_matches(engine, target):
    sn_rule = rule(segment_value=TITER, value_type="SN", value_value=target)
    assert not engine.evaluate(titer_message("^2^:^3"), spec(sn_rule))


def test_ratio_helpers():
    assert structured_numeric_ratio(["<", "4", ":", "1"]) == 0.25
    assert structured_numeric_ratio(["", "0", ":", "1"]) is None
    assert compare_ratio(0.1 + 0.2, 0.3, "=")


# ------------------------------------------------------------------
# Short-circuit evaluation
# ------------------------------------------------------------------

def test_and_rule_that_fails_stops_evaluation(detected):
    engine = RecordingEngine()
    rules = spec(
        rule("AND", value_value="Not detected"),
        rule("OR", segment_value=UNEVALUATED),
        rule("OR"),
    )
    assert engine.evaluate_verdict(detected, rules) is FilterVerdict.FAIL
    assert engine.evaluated == [DETECTED_RULE["segment_value"]]


def test_or_rule_that_passes_stops_evaluation(detected):
    engine = RecordingEngine()
    rules = spec(rule("OR"), rule("AND", segment_value=UNEVALUATED))
    assert engine.evaluate(detected, rules)
    assert len(engine.evaluated) == 1


def test_and_after_false_running_result_is_not_evaluated(detected):
    engine = RecordingEngine()
    rules = spec(rule("OR", value_value="Not detected"), rule("AND", segment_value=UNEVALUATED))
    assert not engine.evaluate(detected, rules)


def test_or_after_false_running_result_is_evaluated(detected):
    engine = RecordingEngine()
    rules = spec(rule("OR", value_value="Not detected"), rule("OR"))
    assert engine.evaluate(detected, rules)
    assert len(engine.evaluated) == 2


def test_and_chain_requires_every_rule(engine):
    message = build_message(
        MSH_251,
        PID_MR_SS,
        OBR,
        OBX_DETECTED,
        f"OBX|2|SN|{TITER}||^2^:^3||||||F",
    )
    both = spec(rule("AND"), rule("AND", segment_value=TITER, value_type="SN", value_value="<=^1^:^2"))
    assert engine.evaluate(message, both)

    second_fails = spec(rule("AND"), rule("AND", segment_value=TITER, value_type="SN", value_value=">^1^:^2"))
    assert not engine.evaluate(message, second_fails)
