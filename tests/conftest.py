"""
Pytest fixtures for the ELR receiver tests.
"""
import pytest
from typing import Any, Callable, Dict, List, Optional, Union

import requests

from elr_receiver.clients.registry_client import RegistryClient
from elr_receiver.hl7_message import EncodingCharacters, HL7Segment, InboundMessage
from elr_receiver.retry_queue import RetryQueue
from elr_receiver.schemas import FilterSpec

REGISTRY_URL = "http://registry.test/fhir"

MSH_251 = "MSH|^~\\&|LAB|LABFAC|ELR|STATE|20240105134500-0500||ORU^R01^ORU_R01|MSG00001|P|2.5.1"
MSH_23 = "MSH|^~\\&|LAB|LABFAC|ELR|STATE|20240105134500||ORU^R01|MSG00023|P|2.3"
PID_MR_SS = "PID|1||12345^^^HOSP^MR~999-99-9999^^^SSA^SS||DOE^JANE||19800101|F"
OBR = "OBR|1||ORD1|94500-6^SARS-CoV-2 RNA^LN|||20240105120000"
OBX_DETECTED = "OBX|1|ST|94500-6^SARS-CoV-2 RNA^LN||Detected||||||F"

ORU_251 = "\r".join([MSH_251, PID_MR_SS, OBR, OBX_DETECTED])

ORU_23 = "\r".join([
    MSH_23,
    "PID|1|EXT-77^^^CLINIC^PI|||SMITH^JOHN||19751231|M|||||||||||123-45-6789",
    OBR,
    OBX_DETECTED,
])

DETECTED_RULE = {
    "conjunction": "OR",
    "segment_loc": "OBX-3",
    "segment_value": "94500-6^SARS-CoV-2 RNA^LN",
    "value_loc": "OBX-5",
    "value_type": "ST",
    "value_value": "Detected",
}


def build_message(*segments: str) -> InboundMessage:
    """InboundMessage straight from segment strings, without hl7apy."""
    encoding = EncodingCharacters.from_msh(segments[0])
    return InboundMessage([HL7Segment.from_er7(s, encoding) for s in segments])


class MockResp:
    def __init__(self, payload=None, status_code=200, text='OK'):
        self._payload = payload
        self.status_code = status_code
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


def operation_outcome(*texts: str) -> Dict[str, Any]:
    return {
        "resourceType": "OperationOutcome",
        "issue": [{"severity": "error", "code": "processing", "details": {"text": t}} for t in texts],
    }


Reply = Union[MockResp, Exception, Callable[..., MockResp]]


class FakeSession:
    """Stands in for requests.Session; replays queued replies in order."""

    def __init__(self, replies: Optional[List[Reply]] = None, default: Optional[Reply] = None):
        self.headers: Dict[str, str] = {}
        self.auth = None
        self.replies = list(replies or [])
        self.default = default or MockResp({"resourceType": "Parameters"}, 200)
        self.calls: List[Dict[str, Any]] = []

    def post(self, url, data=None, timeout=None, **kwargs):
        self.calls.append({"url": url, "data": data, "timeout": timeout})
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        if callable(reply) and not isinstance(reply, MockResp):
            return reply(url, data)
        return reply


@pytest.fixture
def queue(tmp_path) -> RetryQueue:
    return RetryQueue(tmp_path / "queueELR")


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def client(queue, session) -> RegistryClient:
    return RegistryClient(REGISTRY_URL, queue, timeout=5.0, session=session)


@pytest.fixture
def detected_spec() -> FilterSpec:
    return FilterSpec.model_validate({"version": "0.0.1", "filters": [DETECTED_RULE]})


@pytest.fixture
def oru_251() -> InboundMessage:
    return InboundMessage.from_er7(ORU_251)


@pytest.fixture
def oru_23() -> InboundMessage:
    return InboundMessage.from_er7(ORU_23)


@pytest.fixture
def connection_error() -> Exception:
    return requests.ConnectionError("connection refused")
