from __future__ import annotations

from typing import Any, Dict, List, Optional


class DocumentError(Exception):
    """Failure scoped to a single document. Never aborts a batch."""

    code = "document_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class MalformedDocument(DocumentError):
    code = "malformed_document"


class UnsupportedVersion(DocumentError):
    code = "unsupported_version"

    def __init__(self, version: str):
        super().__init__(f"Unsupported XLIFF version: {version}", {"version": version})
        self.version = version


class MissingRequiredAttribute(DocumentError):
    code = "missing_required_attribute"

    def __init__(self, attribute: str, element: str):
        super().__init__(f"Missing required attribute '{attribute}' on <{element}>", {"attribute": attribute, "element": element})
        self.attribute = attribute
        self.element = element


class IncompleteTranslation(DocumentError):
    code = "incomplete_translation"

    def __init__(self, unit_ids: List[str]):
        preview = ", ".join(unit_ids[:10])
        more = f" (+{len(unit_ids) - 10} more)" if len(unit_ids) > 10 else ""
        super().__init__(f"{len(unit_ids)} unit(s) not ready for emission: {preview}{more}", {"unit_ids": unit_ids})
        self.unit_ids = unit_ids


class UnitError(Exception):
    """Failure scoped to a single translation unit."""

    code = "unit_error"

    def __init__(self, unit_id: str, message: str):
        super().__init__(f"[{unit_id}] {message}")
        self.unit_id = unit_id


class TranslationUnavailable(UnitError):
    code = "translation_unavailable"

    def __init__(self, unit_id: str, attempts: int, last_error: Optional[BaseException] = None):
        super().__init__(unit_id, f"translation unavailable after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class StructuralIntegrityFailure(UnitError):
    code = "structural_integrity_failure"


class GroupConflict(Exception):
    code = "group_conflict"

    def __init__(self, group_id: str, language: str, existing: str, incoming: str):
        super().__init__(
            f"Group {group_id} already links '{existing}' for language '{language}', refusing '{incoming}'"
        )
        self.group_id = group_id
        self.language = language
        self.existing = existing
        self.incoming = incoming


class ProviderError(RuntimeError):
    """Error raised by an external translation capability. Retriable."""

    code = "provider_error"


class RateLimited(ProviderError):
    code = "rate_limited"


class Timeout(ProviderError):
    code = "timeout"


class InvalidResponse(ProviderError):
    code = "invalid_response"


class MissingApiKeyError(RuntimeError):
    """Raised when a required provider API key is missing."""


class OverwriteNotConfirmed(RuntimeError):
    """Raised when a memory overwrite is attempted without operator confirmation."""
