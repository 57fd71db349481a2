"""Tool-use policy contract.

The rule checker itself lives outside this service; sync and retrieval never
consult it. Callers that gate agent tools depend on :class:`PolicyChecker`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class ToolPolicy:
    role_tools: dict[str, list[str]] = field(default_factory=dict)
    approval_required_tools: list[str] = field(default_factory=list)
    tool_constraints: dict[str, dict[str, Any]] = field(default_factory=dict)


@dataclass(frozen=True)
class PolicyRequest:
    role: str
    tool_name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    requires_approval: bool = False
    denial_reason: str | None = None
    violated_rule: str | None = None


@runtime_checkable
class PolicyChecker(Protocol):
    def check(self, policy: ToolPolicy | None, request: PolicyRequest) -> PolicyDecision:
        ...
