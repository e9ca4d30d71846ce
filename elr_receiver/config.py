"""
Process configuration.

Values come from environment variables, optionally seeded from a ``.env``
file through python-dotenv:

    PORT                     HTTP listener port                    (8888)
    FHIR_CONTROLLER_API_URL  registry controller base URL          (http://localhost:8080/fhir)
    QUEUE_FILE               retry queue file                      (queueELR)
    SAVE_TO_FILE             YES to keep a copy of every payload   (NO)
    FILE_PATH                directory for saved payloads          (./)
    AUTH_BASIC               user:password for the registry
    AUTH_BEARER              bearer token for the registry (ignored when AUTH_BASIC is set)
    HL7_HTTP_BASIC           user:password senders must present    (unset: no check)
    FILTER_SPEC_PATH         JSON filter specification             (filter.json)
    REQUEST_TIMEOUT          registry request timeout, seconds     (30)
    QUEUE_INITIAL_DELAY      seconds before the first drain        (20)
    QUEUE_INTERVAL           seconds between drains                (10)
    LOG_FILE                 JSON log file, empty to disable       (elr_receiver.log)
    LOG_LEVEL                console log level                     (INFO)
"""

import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv
from pydantic import ValidationError

from .exceptions import ConfigurationError
from .schemas import FilterSpec

logger = logging.getLogger("elr-receiver")

SECRET_FIELDS = ("auth_basic", "auth_bearer", "hl7_http_basic")
TRUE_VALUES = ("YES", "Y", "TRUE", "1", "ON")


def normalize_url(url: str) -> str:
    url = url.strip()
    if "://" not in url:
        url = f"http://{url}"
    return url.rstrip("/")


def _number(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number", {"value": raw})
    if value < 0:
        raise ConfigurationError(f"{key} must not be negative", {"value": raw})
    return value


@dataclass(frozen=True)
class Settings:
    port: int = 8888
    registry_url: str = "http://localhost:8080/fhir"
    queue_file: str = "queueELR"
    save_to_file: bool = False
    file_path: str = "./"
    auth_basic: Optional[str] = None
    auth_bearer: Optional[str] = None
    hl7_http_basic: Optional[str] = None
    filter_spec_path: str = "filter.json"
    request_timeout: float = 30.0
    queue_initial_delay: float = 20.0
    queue_interval: float = 10.0
    log_file: Optional[str] = "elr_receiver.log"
    log_level: str = "INFO"

    @classmethod
    def from_environment(
        cls,
        env_file: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "Settings":
        """
        Build settings from the environment.

        ``environ`` replaces ``os.environ`` (and skips .env loading) when given.
        """
        if environ is None:
            if env_file:
                load_dotenv(env_file, override=True)
            else:
                load_dotenv()
            environ = os.environ

        def text(key: str, default: Optional[str] = None) -> Optional[str]:
            value = environ.get(key)
            if value is None or value.strip() == "":
                return default
            return value.strip()

        port = int(_number(environ, "PORT", cls.port))
        if not 0 < port < 65536:
            raise ConfigurationError("PORT must be between 1 and 65535", {"value": port})

        log_file = environ.get("LOG_FILE")

        return cls(
            port=port,
            registry_url=normalize_url(text("FHIR_CONTROLLER_API_URL", cls.registry_url)),
            queue_file=text("QUEUE_FILE", cls.queue_file),
            save_to_file=(text("SAVE_TO_FILE", "NO").upper() in TRUE_VALUES),
            file_path=text("FILE_PATH", cls.file_path),
            auth_basic=text("AUTH_BASIC"),
            auth_bearer=text("AUTH_BEARER"),
            hl7_http_basic=text("HL7_HTTP_BASIC"),
            filter_spec_path=text("FILTER_SPEC_PATH", cls.filter_spec_path),
            request_timeout=_number(environ, "REQUEST_TIMEOUT", cls.request_timeout) or cls.request_timeout,
            queue_initial_delay=_number(environ, "QUEUE_INITIAL_DELAY", cls.queue_initial_delay),
            queue_interval=_number(environ, "QUEUE_INTERVAL", cls.queue_interval) or cls.queue_interval,
            log_file=cls.log_file if log_file is None else (log_file.strip() or None),
            log_level=text("LOG_LEVEL", cls.log_level).upper(),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Settings with secrets masked, for startup logging."""
        data = asdict(self)
        for key in SECRET_FIELDS:
            if data.get(key):
                data[key] = "****"
        return data


def load_filter_spec(path: Optional[str]) -> Optional[FilterSpec]:
    """
    Load and validate the filter document.

    Returns None on any problem; the filter engine then fails closed for
    every message until a valid document is provided.
    """
    if not path:
        logger.error("[CONFIG] No filter specification path configured")
        return None

    spec_path = Path(path)
    try:
        raw = json.loads(spec_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        logger.error(f"[CONFIG] Filter specification not found: {spec_path}")
        return None
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"[CONFIG] Filter specification {spec_path} is not readable JSON: {e}")
        return None

    try:
        spec = FilterSpec.model_validate(raw)
    except ValidationError as e:
        logger.error(f"[CONFIG] Filter specification {spec_path} is invalid: {e}")
        return None

    if not spec.is_supported:
        logger.error(f"[CONFIG] Filter specification version {spec.version!r} is not supported")
    else:
        logger.info(f"[CONFIG] Loaded {len(spec.filters)} filter rule(s) from {spec_path}")
    return spec
