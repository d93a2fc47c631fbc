"""Agent session graph: analyze -> call_llm <-> execute_tools -> apply_fixes -> verify.

Every routing point checks the session budget (reasoning calls and an
approximate token count). Exceeding either routes to ``fail``; a session
can therefore never issue more than ``max_iterations`` reasoning calls.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from langgraph.graph import END, START, StateGraph

from buildmend.agent.parsing import parse_tool_calls
from buildmend.agent.state import AgentPhase, AgentState, InvestigationResult, packages_in
from buildmend.agent.tools import TOOL_DEFINITIONS, TOOLS, ToolContext, execute_tool
from buildmend.core.models import BuildError, ChangeKind, FileChange, SearchReplace

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.7
MESSAGE_RESULT_CHARS = 2000
LOG_RESULT_CHARS = 1000

FAIL_SUGGESTIONS = [
    "Review the investigation results for clues",
    "Consider manually inspecting the affected files",
    "Check the Angular upgrade guide for this specific issue",
]

SYSTEM_PROMPT = """You are an expert Angular upgrade assistant. You know Angular \
migration paths, TypeScript, the difference between browser and Node.js runtimes, \
and the npm package ecosystem.

Your task is to diagnose and fix one build or runtime error found during an upgrade.

Guidelines:
1. Investigate before proposing a fix: read files, search code, check packages.
2. For errors that mention packages under node_modules, check whether they run in a browser.
3. "Cannot convert undefined or null to object" next to a node_modules package usually
   means a Node.js-only package is bundled for the browser.
4. Browsers have native URL and fetch APIs; modern Angular needs no polyfills for them.
5. When removing a package, also remove its imports from source files.
6. Prefer minimal search/replace edits over whole-file content. Do not change versions.

Call one or more tools per reply using this format:
TOOL_CALL: tool_name({"param": "value"})

Call propose_changes once you are confident in the fix.

Available tools:
"""

NUDGE = (
    "No tool call was found in your reply. Continue investigating with a tool, "
    "or call propose_changes if you have a fix. Use: TOOL_CALL: tool_name({...})"
)


@dataclass
class AgentOutcome:
    success: bool
    changes: list[FileChange] = field(default_factory=list)
    reasoning: str | None = None
    confidence: float = 0.0
    suggestions: list[str] = field(default_factory=list)
    phase: AgentPhase = AgentPhase.FAILED
    iterations: int = 0
    token_usage: int = 0


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def budget_exhausted(state: AgentState) -> bool:
    return (
        state.get("iteration", 0) >= state.get("max_iterations", 10)
        or state.get("token_usage", 0) >= state.get("max_token_budget", 500_000)
    )


def _analysis_prompt(state: AgentState, packages: list[str]) -> str:
    error: BuildError = state["error"]
    related = ", ".join(packages) if packages else "none detected"
    return f"""Analyze this Angular upgrade error (target version {state.get("target_version", "latest")}):

**Error:** {error.message}
**File:** {error.file or "unknown"}
**Line:** {error.line or "unknown"}
**Category:** {error.category.value}
**Packages referenced under node_modules:** {related}

**Build Output:**
```
{state.get("build_output", "")[:3000]}
```

**Project Context:**
{state.get("project_context", "")[:2000]}

Which tools should be used to investigate? Think step by step:
1. Is this a build-time error, a runtime error or a dependency issue?
2. Which files or packages are involved?
3. What should be searched for or read first?"""


def proposal_to_changes(proposal: dict[str, Any]) -> list[FileChange]:
    """Convert ``propose_changes`` arguments into FileChanges, preferring search/replace."""
    changes: list[FileChange] = []
    for raw in proposal.get("changes") or []:
        if not isinstance(raw, dict) or not raw.get("file"):
            continue
        try:
            kind = ChangeKind(str(raw.get("type", "modify")).lower())
        except ValueError:
            logger.info("Ignoring change with unknown type %r", raw.get("type"))
            continue

        if kind is ChangeKind.DELETE:
            changes.append(FileChange(file=raw["file"], kind=kind))
            continue

        pairs = [
            SearchReplace(search=p["search"], replace=p.get("replace", ""))
            for p in raw.get("search_replace") or []
            if isinstance(p, dict) and p.get("search")
        ]
        if raw.get("search"):
            pairs.append(SearchReplace(search=raw["search"], replace=raw.get("replace", "")))

        if pairs and kind is ChangeKind.MODIFY:
            changes.append(FileChange(file=raw["file"], kind=kind, search_replace=pairs))
        elif raw.get("content") is not None:
            changes.append(
                FileChange(file=raw["file"], kind=kind, content=raw["content"], full_replacement=True)
            )
    return changes


def _tool_context(state: AgentState) -> ToolContext:
    return ToolContext(project_path=Path(state["project_path"]))


def build_agent_graph(llm):
    """Compile the session graph around *llm* (anything with ``async chat(messages)``)."""

    async def analyze(state: AgentState) -> dict[str, Any]:
        error: BuildError = state["error"]
        packages = packages_in(f"{error.message}\n{error.file or ''}\n{state.get('build_output', '')}")
        logger.info("Agent analyzing %s (%d related packages)", error.location, len(packages))
        system = SYSTEM_PROMPT + json.dumps(TOOL_DEFINITIONS, indent=2)
        return {
            "phase": AgentPhase.INVESTIGATING,
            "related_packages": packages,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": _analysis_prompt(state, packages)},
            ],
        }

    async def call_llm(state: AgentState) -> dict[str, Any]:
        iteration = state.get("iteration", 0) + 1
        messages = state.get("messages", [])
        logger.info("Agent reasoning call %d/%d", iteration, state.get("max_iterations", 10))

        completion = await llm.chat(messages)
        reply = completion.text or ""
        used = estimate_tokens("".join(m["content"] for m in messages) + reply)
        calls = parse_tool_calls(reply, TOOLS)

        new_messages = [{"role": "assistant", "content": reply}]
        if not calls:
            new_messages.append({"role": "user", "content": NUDGE})
        return {
            "iteration": iteration,
            "token_usage": state.get("token_usage", 0) + used,
            "messages": new_messages,
            "pending_tool_calls": calls,
        }

    async def execute_tools(state: AgentState) -> dict[str, Any]:
        calls = state.get("pending_tool_calls", [])
        ctx = _tool_context(state)
        results = await asyncio.gather(*(execute_tool(c.name, c.arguments, ctx) for c in calls))

        investigation = []
        files_read: dict[str, str] = {}
        browser_issues: list[str] = []
        proposal = None
        sections = []

        for call, result in zip(calls, results):
            query = json.dumps(call.arguments)[:200]
            investigation.append(
                InvestigationResult(call.name, query, result.result[:LOG_RESULT_CHARS], result.success)
            )
            status = "" if result.success else " (failed)"
            sections.append(
                f"Tool result for {call.name}{status}:\n{result.result[:MESSAGE_RESULT_CHARS]}"
            )
            if not result.success:
                continue
            if call.name == "read_file":
                path = call.arguments.get("file_path") or call.arguments.get("filePath")
                if path:
                    files_read[str(path)] = result.result[:MESSAGE_RESULT_CHARS]
            elif call.name == "check_package":
                meta = result.metadata
                if meta.get("browser_incompatible") or meta.get("node_only"):
                    browser_issues.append(meta["package_name"])
            elif call.name == "propose_changes":
                proposal = result.metadata

        update: dict[str, Any] = {
            "pending_tool_calls": [],
            "investigation": investigation,
            "files_read": files_read,
            "browser_issues": browser_issues,
            "messages": [{"role": "user", "content": "\n\n".join(sections)}],
        }
        if proposal is not None:
            update["proposal"] = proposal
            update["phase"] = AgentPhase.FIXING
        return update

    async def apply_fixes(state: AgentState) -> dict[str, Any]:
        proposal = state.get("proposal") or {}
        changes = proposal_to_changes(proposal)
        try:
            confidence = float(proposal.get("confidence", DEFAULT_CONFIDENCE))
        except (TypeError, ValueError):
            confidence = DEFAULT_CONFIDENCE
        logger.info("Agent proposed %d change(s) at confidence %.2f", len(changes), confidence)
        return {
            "phase": AgentPhase.VERIFYING,
            "final_changes": changes,
            "confidence": confidence,
            "reasoning": proposal.get("explanation") or state.get("reasoning"),
        }

    async def verify(state: AgentState) -> dict[str, Any]:
        suggestions = []
        issues = state.get("browser_issues", [])
        if issues:
            suggestions.append("Run `npm install` after applying changes to update node_modules")
            suggestions.append(
                f"Verify the application no longer needs: {', '.join(issues)}"
            )
        suggestions.append("Rebuild the project to confirm the fix")
        return {"phase": AgentPhase.COMPLETE, "success": True, "suggestions": suggestions}

    async def fail(state: AgentState) -> dict[str, Any]:
        logger.info(
            "Agent gave up after %d call(s), ~%d tokens",
            state.get("iteration", 0), state.get("token_usage", 0),
        )
        return {
            "phase": AgentPhase.FAILED,
            "success": False,
            "reasoning": state.get("reasoning")
            or "Could not determine a fix within the iteration/budget limits",
            "suggestions": list(FAIL_SUGGESTIONS),
        }

    def route_after_analyze(state: AgentState) -> Literal["call_llm", "fail"]:
        return "fail" if budget_exhausted(state) else "call_llm"

    def route_after_llm(state: AgentState) -> Literal["execute_tools", "call_llm", "fail"]:
        if state.get("pending_tool_calls"):
            return "execute_tools"
        return "fail" if budget_exhausted(state) else "call_llm"

    def route_after_tools(state: AgentState) -> Literal["apply_fixes", "call_llm", "fail"]:
        if state.get("phase") is AgentPhase.FIXING:
            return "apply_fixes"
        return "fail" if budget_exhausted(state) else "call_llm"

    def route_after_apply(state: AgentState) -> Literal["verify", "fail"]:
        return "verify" if state.get("final_changes") else "fail"

    graph = StateGraph(AgentState)
    graph.add_node("analyze", analyze)
    graph.add_node("call_llm", call_llm)
    graph.add_node("execute_tools", execute_tools)
    graph.add_node("apply_fixes", apply_fixes)
    graph.add_node("verify", verify)
    graph.add_node("fail", fail)

    graph.add_edge(START, "analyze")
    graph.add_conditional_edges(
        "analyze", route_after_analyze, {"call_llm": "call_llm", "fail": "fail"}
    )
    graph.add_conditional_edges(
        "call_llm",
        route_after_llm,
        {"execute_tools": "execute_tools", "call_llm": "call_llm", "fail": "fail"},
    )
    graph.add_conditional_edges(
        "execute_tools",
        route_after_tools,
        {"apply_fixes": "apply_fixes", "call_llm": "call_llm", "fail": "fail"},
    )
    graph.add_conditional_edges(
        "apply_fixes", route_after_apply, {"verify": "verify", "fail": "fail"}
    )
    graph.add_edge("verify", END)
    graph.add_edge("fail", END)

    return graph.compile()


async def run_agent(
    llm,
    error: BuildError,
    project_path: Path,
    project_context: str = "",
    build_output: str = "",
    target_version: str = "",
    max_iterations: int = 10,
    max_token_budget: int = 500_000,
) -> AgentOutcome:
    """Run one agent session for *error*. Exceptions from the backend propagate."""
    graph = build_agent_graph(llm)
    initial: AgentState = {
        "error": error,
        "project_path": str(project_path),
        "project_context": project_context,
        "build_output": build_output,
        "target_version": target_version,
        "phase": AgentPhase.ANALYZING,
        "iteration": 0,
        "max_iterations": max_iterations,
        "token_usage": 0,
        "max_token_budget": max_token_budget,
        "messages": [],
        "investigation": [],
        "files_read": {},
        "related_packages": [],
        "browser_issues": [],
        "pending_tool_calls": [],
        "proposal": None,
        "final_changes": [],
        "success": False,
        "confidence": 0.0,
        "reasoning": None,
        "suggestions": [],
    }
    final = await graph.ainvoke(initial, config={"recursion_limit": max_iterations * 3 + 10})

    return AgentOutcome(
        success=bool(final.get("success")),
        changes=list(final.get("final_changes") or []),
        reasoning=final.get("reasoning"),
        confidence=float(final.get("confidence") or 0.0),
        suggestions=list(final.get("suggestions") or []),
        phase=final.get("phase", AgentPhase.FAILED),
        iterations=final.get("iteration", 0),
        token_usage=final.get("token_usage", 0),
    )
