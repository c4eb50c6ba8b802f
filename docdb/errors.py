"""
Error types for docdb.

This module defines all exception types raised by the data-access layer:
- DocDbError: Base exception
- ValidationError: Schema violation on create/set/patch/commit
- NotFoundError: Missing id or fingerprint target
- BadRequestError: Caller misuse (non-unique fingerprint, link kind
  mismatch, undeclared collection)
- DocumentStateError: Operation not allowed in the document's state
- ConflictError: Duplicate key or exhausted version-archive race
- InternalError: Inconsistent schema (link without a target collection)
- StorageError: Any other storage driver failure, annotated

Invariants:
    - All errors inherit from DocDbError
    - Errors carry the collection name when one is known
    - Driver errors never leak unannotated past a Collection

How to change safely:
    - Add new error codes as new subclasses, never reuse a code
    - Keep constructor keyword arguments backward compatible
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence


class DocDbError(Exception):
    """Base exception for all docdb errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "DOCDB_ERROR"
        self.details = details or {}


class ValidationError(DocDbError):
    """A raw record or a value does not satisfy its schema.

    Raised synchronously, before any I/O, when:
    - A required property is missing
    - A value has the wrong type and cannot be sanitized
    - An unknown property is set on a strict object

    Attributes:
        validator_message: The undecorated message of the validator
        collection: Collection name, once known
        path: Offending dot path, if a single one
        errors: Every individual problem found
    """

    def __init__(
        self,
        message: str,
        *,
        collection: Optional[str] = None,
        path: Optional[str] = None,
        errors: Optional[List[str]] = None,
    ) -> None:
        self.validator_message = message
        if collection:
            message = f"Collection '{collection}': {message}"
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"collection": collection, "path": path, "errors": errors or []},
        )
        self.collection = collection
        self.path = path
        self.errors = errors or []

    def for_collection(self, collection: str) -> ValidationError:
        """Return a copy decorated with the collection name."""
        return ValidationError(
            self.validator_message,
            collection=collection,
            path=self.path,
            errors=self.errors,
        )


class NotFoundError(DocDbError):
    """No record matches the requested id or fingerprint."""

    def __init__(
        self,
        message: str,
        *,
        collection: Optional[str] = None,
        document_id: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={"collection": collection, "document_id": document_id},
        )
        self.collection = collection
        self.document_id = document_id


class BadRequestError(DocDbError):
    """The call itself is invalid.

    Raised when:
    - A fingerprint that does not cover a unique index is used as a key
    - A single-valued link accessor is used on a multi-valued path (or
      the reverse)
    - A link points to a collection that was never declared
    """

    def __init__(
        self,
        message: str,
        *,
        collection: Optional[str] = None,
        path: Optional[str] = None,
        code: str = "BAD_REQUEST",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        merged = {"collection": collection, "path": path}
        merged.update(details or {})
        super().__init__(message, code=code, details=merged)
        self.collection = collection
        self.path = path


class DocumentStateError(BadRequestError):
    """The document's lifecycle state forbids the operation.

    Raised on save/commit/patch/lock of a deleted document, and on local
    mutation of a frozen one.
    """

    def __init__(
        self,
        message: str,
        *,
        collection: Optional[str] = None,
        state: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            collection=collection,
            code="INVALID_STATE",
            details={"state": state},
        )
        self.state = state


class ConflictError(DocDbError):
    """A write collided with existing data.

    Attributes:
        kind: "duplicate_key" or "version_race"
        index_fields: Field list of the violated unique index
    """

    DUPLICATE_KEY = "duplicate_key"
    VERSION_RACE = "version_race"

    def __init__(
        self,
        message: str,
        *,
        collection: Optional[str] = None,
        kind: str = DUPLICATE_KEY,
        index_fields: Sequence[str] = (),
    ) -> None:
        super().__init__(
            message,
            code="CONFLICT",
            details={
                "collection": collection,
                "kind": kind,
                "index_fields": list(index_fields),
            },
        )
        self.collection = collection
        self.kind = kind
        self.index_fields = tuple(index_fields)


class InternalError(DocDbError):
    """The schema is inconsistent with the data it describes."""

    def __init__(
        self,
        message: str,
        *,
        collection: Optional[str] = None,
        path: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="INTERNAL_ERROR",
            details={"collection": collection, "path": path},
        )
        self.collection = collection
        self.path = path


class StorageError(DocDbError):
    """A storage driver failed for a reason other than a duplicate key."""

    def __init__(
        self,
        message: str,
        *,
        collection: Optional[str] = None,
        operation: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="STORAGE_ERROR",
            details={"collection": collection, "operation": operation},
        )
        self.collection = collection
        self.operation = operation
