"""Tests for reasoning-backend guardrails."""

from __future__ import annotations

from buildmend.core.models import BuildError, ErrorCategory, FileChange
from buildmend.llm.client import ReasoningRequest, ReasoningResponse
from buildmend.llm.guardrails import Guardrails


def _make_request(message: str = "Object is possibly 'undefined'.", **overrides) -> ReasoningRequest:
    fields = dict(
        kind="refactor",
        error=BuildError(ErrorCategory.TYPESCRIPT, message, file="src/app/a.ts", line=1),
        file_content="const a = b.c;",
        target_version="17.0.0",
        constraints=["Minimal changes only"],
    )
    fields.update(overrides)
    return ReasoningRequest(**fields)


class TestValidateRequest:
    def test_valid_request(self):
        assert Guardrails.validate_request(_make_request()) == (True, None)

    def test_version_questions_are_refused(self):
        ok, reason = Guardrails.validate_request(_make_request("Unsupported Version of TypeScript"))
        assert not ok
        assert "versions" in reason

    def test_missing_content_is_refused(self):
        ok, reason = Guardrails.validate_request(_make_request(file_content=""))
        assert not ok
        assert reason == "No file content provided"

    def test_missing_constraints_are_refused(self):
        ok, _ = Guardrails.validate_request(_make_request(constraints=[]))
        assert not ok


class TestValidateResponse:
    def test_failed_response_passes_through(self):
        assert Guardrails.validate_response(ReasoningResponse(success=False)) == (True, None)

    def test_success_needs_changes(self):
        ok, reason = Guardrails.validate_response(ReasoningResponse(success=True))
        assert not ok
        assert reason == "No changes provided"

    def test_manifest_edits_are_refused(self):
        for path in ("package.json", "apps/web/package.json", "apps\\web\\package.json"):
            response = ReasoningResponse(success=True, changes=[FileChange(file=path, content="{}")])
            ok, reason = Guardrails.validate_response(response)
            assert not ok, path
            assert "package.json" in reason

    def test_source_edits_are_allowed(self):
        response = ReasoningResponse(success=True, changes=[FileChange(file="src/app/a.ts", content="x")])
        assert Guardrails.validate_response(response) == (True, None)
