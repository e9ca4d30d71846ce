"""
Document Extractor: pulls the clinical document out of each message envelope.

An envelope is a FHIR ``Bundle`` of type ``message``. Its first entry is the
MessageHeader, and ``focus[0].reference`` names the ``fullUrl`` of the entry
that holds the document bundle.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger("elr-receiver")


def _focus_reference(envelope: Dict[str, Any]) -> Optional[str]:
    entries = envelope.get("entry") or []
    if not entries:
        return None
    header = entries[0].get("resource") or {}
    focus = header.get("focus") or []
    if not focus:
        return None
    return (focus[0] or {}).get("reference")


def extract_one(envelope: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Return the focused document bundle of one envelope, or None."""
    if not isinstance(envelope, dict) or envelope.get("resourceType") != "Bundle":
        return None
    if envelope.get("type") != "message":
        return None

    reference = _focus_reference(envelope)
    if not reference:
        logger.warning(f"[EXTRACT] Message bundle {envelope.get('id')} has no header focus")
        return None

    for entry in envelope.get("entry") or []:
        if entry.get("fullUrl") != reference:
            continue
        resource = entry.get("resource") or {}
        if resource.get("resourceType") == "Bundle" and resource.get("type") == "document":
            return resource

    logger.warning(f"[EXTRACT] No document bundle at {reference} in message bundle {envelope.get('id')}")
    return None


def extract(bundles: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Keep the focused document of every message envelope, in input order.

    Bundles of other types and envelopes whose focus does not resolve to a
    document bundle are skipped.
    """
    documents = []
    for envelope in bundles:
        document = extract_one(envelope)
        if document is not None:
            documents.append(document)
    logger.debug(f"[EXTRACT] {len(documents)} document(s) extracted")
    return documents
