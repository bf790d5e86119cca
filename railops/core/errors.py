from __future__ import annotations

from typing import Any, Dict, Optional


class RailOpsError(Exception):
    """Base class for errors the core returns to its caller."""

    code = "error"

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": str(self)}


class NotFound(RailOpsError):
    code = "not_found"

    def __init__(self, kind: str, entity_id: str) -> None:
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} {entity_id} not found")

    def to_dict(self) -> Dict[str, Any]:
        return {**super().to_dict(), "kind": self.kind, "id": self.entity_id}


class InvalidTransition(RailOpsError):
    """An invariant or state-machine rule rejected the change."""

    code = "invalid_transition"

    def __init__(self, rule: str, message: str) -> None:
        self.rule = rule
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {**super().to_dict(), "rule": self.rule}


class ConcurrentConflict(RailOpsError):
    """The entity changed between the caller's read and the apply."""

    code = "concurrent_conflict"

    def __init__(self, kind: str, entity_id: str, expected: Optional[int], actual: int) -> None:
        self.kind = kind
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual
        super().__init__(f"{kind} {entity_id} is at version {actual}, expected {expected}")

    def to_dict(self) -> Dict[str, Any]:
        return {**super().to_dict(), "kind": self.kind, "id": self.entity_id, "expected": self.expected, "actual": self.actual}
