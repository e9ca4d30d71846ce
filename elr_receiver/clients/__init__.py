"""
ELR Receiver Client Modules

Provides the HTTP client for delivering documents to the FHIR registry controller.
"""

from .registry_client import (
    DeliveryOutcome,
    DeliveryStatus,
    RegistryClient,
    build_parameters,
)

__all__ = [
    "DeliveryOutcome",
    "DeliveryStatus",
    "RegistryClient",
    "build_parameters",
]
