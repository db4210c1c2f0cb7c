"""
BSON rendering helpers.

Converts MongoDB documents to the textual forms written to the sink and to
the diagnostic log.
"""

from typing import Any, Mapping, Optional

import bson
from bson.json_util import RELAXED_JSON_OPTIONS, dumps


def document_to_line(document: Optional[Mapping[str, Any]]) -> str:
    """
    Render a document as a single line of relaxed Extended JSON.

    ObjectId, datetime, Decimal128 and binary values keep their type
    information ({"$oid": ...}, {"$date": ...}, ...), so the line can be
    parsed back with bson.json_util.loads.

    Args:
        document: Document to render

    Returns:
        JSON text without a trailing newline

    Example:
        >>> from bson import ObjectId
        >>> document_to_line({"_id": ObjectId("64b7f0c2a1b2c3d4e5f60718"), "n": 1})
        '{"_id": {"$oid": "64b7f0c2a1b2c3d4e5f60718"}, "n": 1}'
    """
    return dumps(document, json_options=RELAXED_JSON_OPTIONS)


def token_to_bytes(token: Mapping[str, Any]) -> bytes:
    """Encode a resume token as raw BSON."""
    return bson.encode(token)


def token_from_bytes(data: bytes) -> dict:
    """Decode raw BSON bytes into a resume token."""
    return bson.decode(data)
