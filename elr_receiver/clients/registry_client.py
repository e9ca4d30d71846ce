"""
=============================================================================
REGISTRY CLIENT
=============================================================================

PURPOSE:
    Deliver extracted lab-result documents to the FHIR registry controller.

HOW IT WORKS:
    1. The document and its patient identifier are wrapped in a FHIR
       Parameters resource
    2. The payload is POSTed to <registry_url>/$registry-control
    3. The response is classified as Accepted, Rejected (HTTP 422 with an
       OperationOutcome) or TransportFailure (everything else)
    4. On Rejected or TransportFailure the payload is written to the retry
       queue BEFORE the outcome is returned

USAGE:
    from elr_receiver.clients import RegistryClient

    client = RegistryClient("http://localhost:8080/fhir", queue)
    outcome = client.submit(document, identifier)
    if not outcome.accepted:
        print(outcome.message)

=============================================================================
"""

import json
import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import requests
from requests.auth import HTTPBasicAuth

from ..exceptions import MalformedQueueEntryError
from ..identifier_resolver import PatientIdentifier, resolve
from ..retry_queue import RetryQueue

# ============================================================
# SETUP
# ============================================================

logger = logging.getLogger("elr-receiver")

FHIR_JSON = "application/fhir+json"
REGISTRY_OPERATION = "$registry-control"
IDENTIFIER_PARAMETER = "patient-identifier"
DOCUMENT_PARAMETER = "lab-results"


# ============================================================
# OUTCOME
# ============================================================

class DeliveryStatus(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    TRANSPORT_FAILURE = "transport_failure"


@dataclass
class DeliveryOutcome:
    """
    Result of one delivery attempt.

    ATTRIBUTES:
        status: Accepted, Rejected or TransportFailure
        issues: OperationOutcome issue texts (Rejected only)
        cause: Human-readable failure context
        status_code: HTTP status when a response was received
    """
    status: DeliveryStatus
    issues: List[str] = field(default_factory=list)
    cause: str = ""
    status_code: Optional[int] = None

    @classmethod
    def accepted_outcome(cls, status_code: int = 200) -> "DeliveryOutcome":
        return cls(DeliveryStatus.ACCEPTED, status_code=status_code)

    @classmethod
    def rejected(cls, issues: List[str], cause: str, status_code: int = 422) -> "DeliveryOutcome":
        return cls(DeliveryStatus.REJECTED, issues=list(issues), cause=cause, status_code=status_code)

    @classmethod
    def transport_failure(cls, cause: str, status_code: Optional[int] = None) -> "DeliveryOutcome":
        return cls(DeliveryStatus.TRANSPORT_FAILURE, cause=cause, status_code=status_code)

    @property
    def accepted(self) -> bool:
        return self.status is DeliveryStatus.ACCEPTED

    @property
    def message(self) -> str:
        """Text for the negative acknowledgment."""
        if self.status is DeliveryStatus.REJECTED:
            joined = "".join(self.issues).strip()
            return joined or self.cause
        return self.cause


def build_parameters(document: Dict[str, Any], identifier: PatientIdentifier | str) -> Dict[str, Any]:
    """FHIR Parameters resource carrying the identifier and the document."""
    return {
        "resourceType": "Parameters",
        "parameter": [
            {"name": IDENTIFIER_PARAMETER, "valueString": str(identifier)},
            {"name": DOCUMENT_PARAMETER, "resource": document},
        ],
    }


def operation_outcome_issues(body: Dict[str, Any]) -> List[str]:
    issues = []
    for issue in body.get("issue") or []:
        text = ((issue or {}).get("details") or {}).get("text")
        if text:
            issues.append(text)
    return issues


# ============================================================
# MAIN CLIENT CLASS
# ============================================================

class RegistryClient:
    """
    HTTP client for the registry controller.

    FEATURES:
        - Connection reuse through one requests.Session
        - Basic auth ("user:password") takes precedence over a bearer token
        - Every request carries a bounded timeout
        - Failed deliveries land in the durable retry queue
        - Optional copy of each payload on disk for auditing
    """

    def __init__(
        self,
        base_url: str,
        queue: RetryQueue,
        auth_basic: Optional[str] = None,
        auth_bearer: Optional[str] = None,
        timeout: float = 30.0,
        save_to_file: bool = False,
        file_path: str = "./",
        session: Optional[requests.Session] = None,
    ):
        """
        ARGS:
            base_url: Registry controller base URL (no trailing slash)
            queue: Retry queue receiving failed payloads
            auth_basic: "user:password" for HTTP basic auth
            auth_bearer: Bearer token, used only when auth_basic is unset
            timeout: Request timeout in seconds
            save_to_file: Write each outgoing payload to file_path
            file_path: Directory for saved payloads
            session: Injected session (tests)
        """
        self.base_url = base_url.rstrip("/")
        self.queue = queue
        self.timeout = timeout
        self.save_to_file = save_to_file
        self.file_path = file_path

        self._session = session or requests.Session()
        self._session.headers.update({"Content-Type": FHIR_JSON, "Accept": FHIR_JSON})

        if auth_basic:
            user, _, password = auth_basic.partition(":")
            self._session.auth = HTTPBasicAuth(user, password)
        elif auth_bearer:
            self._session.headers["Authorization"] = f"Bearer {auth_bearer}"

        logger.info(
            f"[DELIVERY] RegistryClient initialized: {self.endpoint} "
            f"(auth={'basic' if auth_basic else 'bearer' if auth_bearer else 'none'}, timeout={timeout}s)"
        )

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/{REGISTRY_OPERATION}"

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def submit(self, document: Dict[str, Any], identifier: PatientIdentifier | str) -> DeliveryOutcome:
        """Deliver one document for the given patient identifier."""
        return self.submit_payload(build_parameters(document, identifier))

    def submit_document(self, document: Dict[str, Any]) -> Optional[DeliveryOutcome]:
        """Resolve the identifier then deliver. None when no identifier was found."""
        identifier = resolve(document)
        if identifier is None:
            return None
        return self.submit(document, identifier)

    def submit_serialized(self, payload: bytes) -> DeliveryOutcome:
        """
        Redeliver a payload taken from the retry queue.

        RAISES:
            MalformedQueueEntryError: payload is not a serialized Parameters resource
        """
        try:
            parameters = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedQueueEntryError(str(e)) from e

        if not isinstance(parameters, dict) or parameters.get("resourceType") != "Parameters":
            raise MalformedQueueEntryError("entry is not a FHIR Parameters resource")

        return self.submit_payload(parameters)

    def submit_payload(self, parameters: Dict[str, Any]) -> DeliveryOutcome:
        """
        POST a Parameters payload and queue it when delivery fails.

        With save_to_file every attempt is written out, redeliveries included.
        """
        if self.save_to_file:
            self.write_to_file(parameters)
        outcome = self._post(parameters)
        if outcome.accepted:
            logger.info(f"[DELIVERY] Registry accepted payload (HTTP {outcome.status_code})")
            return outcome

        logger.error(f"[DELIVERY] {outcome.status.value}: {outcome.message}")
        self.queue.enqueue(json.dumps(parameters).encode("utf-8"))
        return outcome

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _post(self, parameters: Dict[str, Any]) -> DeliveryOutcome:
        try:
            response = self._session.post(
                self.endpoint,
                data=json.dumps(parameters),
                timeout=self.timeout,
            )
        except requests.Timeout:
            return DeliveryOutcome.transport_failure(f"Timed out after {self.timeout}s calling {self.endpoint}")
        except requests.ConnectionError as e:
            return DeliveryOutcome.transport_failure(f"Registry not reachable at {self.endpoint}: {e}")
        except requests.RequestException as e:
            return DeliveryOutcome.transport_failure(f"Request to {self.endpoint} failed: {e}")

        if 200 <= response.status_code < 300:
            return DeliveryOutcome.accepted_outcome(response.status_code)

        if response.status_code == 422:
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and body.get("resourceType") == "OperationOutcome":
                return DeliveryOutcome.rejected(
                    operation_outcome_issues(body),
                    cause=f"Registry rejected the document (HTTP 422) at {self.endpoint}",
                )

        return DeliveryOutcome.transport_failure(
            f"Registry returned HTTP {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
        )

    # ------------------------------------------------------------------
    # Save to file
    # ------------------------------------------------------------------

    def write_to_file(self, parameters: Dict[str, Any]) -> Optional[str]:
        """Write the payload as pretty JSON. Errors are logged, never raised."""
        path = os.path.join(self.file_path, f"{int(time.time() * 1000)}_bundle.txt")
        try:
            os.makedirs(self.file_path, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                json.dump(parameters, f, indent=2)
        except OSError as e:
            logger.error(f"[DELIVERY] Could not save payload to {path}: {e}")
            return None
        logger.debug(f"[DELIVERY] Payload saved to {path}")
        return path
