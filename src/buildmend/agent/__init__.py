"""Bounded tool-using agent for errors the deterministic fixers cannot handle."""

from buildmend.agent.engine import AgentFixEngine, QuickDiagnosis
from buildmend.agent.graph import AgentOutcome, build_agent_graph, run_agent
from buildmend.agent.state import AgentPhase, AgentState

__all__ = [
    "AgentFixEngine",
    "AgentOutcome",
    "AgentPhase",
    "AgentState",
    "QuickDiagnosis",
    "build_agent_graph",
    "run_agent",
]
