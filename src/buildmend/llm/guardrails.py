"""Request and response validators for reasoning-backend calls."""

from __future__ import annotations

from buildmend.core.models import DEPENDENCY_MANIFEST
from buildmend.llm.client import ReasoningRequest, ReasoningResponse


class Guardrails:
    """Keeps backend usage within safe bounds.

    Requests that ask about versions, or arrive without file content or
    constraints, are refused. Successful responses must carry at least
    one change and must never touch the dependency manifest.
    """

    @staticmethod
    def validate_request(request: ReasoningRequest) -> tuple[bool, str | None]:
        if "version" in request.error.message.lower():
            return False, "Cannot ask the reasoning backend about versions"
        if not request.file_content:
            return False, "No file content provided"
        if not request.constraints:
            return False, "No constraints provided"
        return True, None

    @staticmethod
    def validate_response(response: ReasoningResponse) -> tuple[bool, str | None]:
        if not response.success:
            return True, None
        if not response.changes:
            return False, "No changes provided"
        for change in response.changes:
            if change.file.replace("\\", "/").split("/")[-1] == DEPENDENCY_MANIFEST:
                return False, f"Cannot modify {DEPENDENCY_MANIFEST} via the reasoning backend"
        return True, None
