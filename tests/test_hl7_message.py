import pytest

from elr_receiver.exceptions import MessageParseError
from elr_receiver.hl7_message import METADATA_CONTROL_ID, InboundMessage

from .conftest import MSH_251, OBR, OBX_DETECTED, ORU_251, PID_MR_SS, build_message


def test_header_fields(oru_251):
    assert oru_251.version == "2.5.1"
    assert oru_251.message_type == ("ORU", "R01", "ORU_R01")
    assert oru_251.control_id == "MSG00001"
    assert oru_251.sending_application == "LAB"
    assert oru_251.receiving_facility == "STATE"
    assert oru_251.metadata() == {METADATA_CONTROL_ID: "MSG00001"}


def test_msh_field_numbering_counts_the_separator(oru_251):
    assert oru_251.msh.field(1) == "|"
    assert oru_251.msh.field(2) == "^~\\&"
    assert oru_251.msh.field(9) == "ORU^R01^ORU_R01"


def test_two_component_message_type(oru_23):
    assert oru_23.message_type == ("ORU", "R01", None)


def test_newline_separated_text_is_accepted():
    message = InboundMessage.from_er7(ORU_251.replace("\r", "\n"))
    assert [s.name for s in message.all_segments] == ["MSH", "PID", "OBR", "OBX"]


def test_segment_components_and_repetitions(oru_251):
    pid = oru_251.segment("PID")
    assert pid.repetitions(3) == ["12345^^^HOSP^MR", "999-99-9999^^^SSA^SS"]
    assert pid.component(3, 5, 1) == "SS"
    assert pid.component(3, 9) == ""
    assert pid.field(40) == ""


def test_result_groups_nest_patient_order_observation():
    message = build_message(
        MSH_251,
        PID_MR_SS,
        OBR,
        OBX_DETECTED,
        "OBX|2|ST|1234-5^Other^LN||Negative||||||F",
        "OBR|2||ORD2|5196-1^HBsAg^LN",
        "OBX|1|ST|5196-1^HBsAg^LN||Reactive||||||F",
        "PID|1||67890^^^HOSP^MR||ROE^RICHARD",
        "OBR|1||ORD3|94500-6^SARS-CoV-2 RNA^LN",
        "OBX|1|ST|94500-6^SARS-CoV-2 RNA^LN||Not detected||||||F",
    )

    groups = message.result_groups()
    assert len(groups) == 2
    assert [len(o.observations) for o in groups[0].orders] == [2, 1]
    assert groups[1].patient.component(3, 1) == "67890"
    assert groups[1].orders[0].observations[0].field(5) == "Not detected"


def test_observation_without_parents_still_grouped():
    message = build_message(MSH_251, OBX_DETECTED)
    groups = message.result_groups()
    assert groups[0].patient is None
    assert groups[0].orders[0].order is None
    assert len(groups[0].orders[0].observations) == 1


@pytest.mark.parametrize("text", ["", "   ", "\r\n"])
def test_empty_text_is_a_parse_error(text):
    with pytest.raises(MessageParseError):
        InboundMessage.from_er7(text)


def test_text_without_msh_is_a_parse_error():
    with pytest.raises(MessageParseError):
        InboundMessage.from_er7("PID|1||12345^^^HOSP^MR")


def test_segments_must_start_with_msh():
    with pytest.raises(MessageParseError):
        build_message(PID_MR_SS, MSH_251)


def test_header_view_reads_versions_the_parser_does_not_know():
    header = InboundMessage.from_header(ORU_251.replace("|P|2.5.1", "|P|3.0"))
    assert header.version == "3.0"
    assert header.control_id == "MSG00001"
    assert header.message_type == ("ORU", "R01", "ORU_R01")
    assert [s.name for s in header.all_segments] == ["MSH"]


def test_header_view_without_msh_is_a_parse_error():
    with pytest.raises(MessageParseError):
        InboundMessage.from_header("PID|1||12345^^^HOSP^MR")
