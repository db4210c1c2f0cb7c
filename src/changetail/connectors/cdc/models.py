"""
Change event model and decoder for raw change stream documents.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from ...exceptions import StreamError


class OperationType(str, Enum):
    """Operation kinds delivered to the sink. Everything else is filtered by the server."""
    INSERT = "insert"
    UPDATE = "update"
    REPLACE = "replace"


# Fields kept by the subscription's $project stage
PROJECTED_FIELDS = ("_id", "operationType", "fullDocument", "ns", "documentKey")


@dataclass(frozen=True)
class ChangeEvent:
    """
    A single insert/update/replace notification.

    Attributes:
        operation: Operation kind
        document_key: Identity of the affected record
        full_document: Post-image of the record, None if it no longer exists
        resume_token: Token of this event (the change document's _id)
        namespace: Database and collection the change happened in
        raw: The change document as received, used for tracing
    """
    operation: OperationType
    document_key: Dict[str, Any]
    full_document: Optional[Dict[str, Any]]
    resume_token: Dict[str, Any]
    namespace: Dict[str, Any] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def has_full_document(self) -> bool:
        return self.full_document is not None

    @classmethod
    def from_change(cls, change: Mapping[str, Any]) -> "ChangeEvent":
        """
        Decode a raw change document.

        Fields are looked up by name, so the decoder does not depend on the
        order in which the server returns them.

        Args:
            change: Change stream document

        Returns:
            Decoded ChangeEvent

        Raises:
            StreamError: If the document lacks a required field or carries an
                operation kind outside insert/update/replace
        """
        if not isinstance(change, Mapping):
            raise StreamError(f"Change document must be a mapping, got {type(change).__name__}")

        op_name = change.get("operationType")
        if op_name is None:
            raise StreamError("Change document has no operationType")
        try:
            operation = OperationType(op_name)
        except ValueError as e:
            raise StreamError(f"Unexpected operation type: {op_name!r}") from e

        token = change.get("_id")
        if not isinstance(token, Mapping) or not token:
            raise StreamError("Change document has no resume token (_id)")

        full_document = change.get("fullDocument")
        if full_document is not None and not isinstance(full_document, Mapping):
            raise StreamError(
                f"fullDocument must be a document, got {type(full_document).__name__}"
            )

        return cls(
            operation=operation,
            document_key=dict(change.get("documentKey") or {}),
            full_document=dict(full_document) if full_document is not None else None,
            resume_token=dict(token),
            namespace=dict(change.get("ns") or {}),
            raw=dict(change),
        )
