"""Handoff parsing: trust the agent's output, verify it, force it if missing.

An agent ends its step by printing a small YAML (or JSON) block naming the
next agent. ``try_parse_handoff`` looks for it in fenced blocks, then in an
inline ``next_agent:`` section, then loosely in the tail of the output. When
nothing valid is found, ``get_handoff`` resumes the session once and asks for
the handoff explicitly before giving up with ``HandoffProtocolError``.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog
import yaml

from whs.config import DEFAULT_KNOWN_AGENTS
from whs.models import BLOCKED, DONE, CIStatus, Handoff
from whs.runners.base import AgentRunner, RunOptions, RunResult

logger = structlog.get_logger(__name__)

HANDOFF_TOOL = "Handoff"
CI_STATUSES: frozenset[str] = frozenset({"pending", "passed", "failed"})
LOOSE_MATCH_CHARS = 2000
FORCE_HANDOFF_PROMPT = (
    "Your handoff was missing or malformed. You MUST output your handoff now "
    "as a ```yaml block with next_agent and context (or call the Handoff tool)."
)

AGENT_DESCRIPTIONS = {
    "implementation": "for code changes",
    "quality_review": "for PR review",
    "release_manager": "for merging",
    "ux_specialist": "for UI/UX work",
    "architect": "for complex decisions",
    "planner": "for breaking work down",
    DONE: "when task is complete",
    BLOCKED: "when human intervention needed",
}

_FENCED_YAML = re.compile(r"```ya?ml\s*\n(.*?)\n```", re.IGNORECASE | re.DOTALL)
_FENCED_JSON = re.compile(r"```json\s*\n(.*?)\n```", re.IGNORECASE | re.DOTALL)
_INLINE_START = re.compile(r"^next_agent:", re.MULTILINE)
_TOP_LEVEL_KEY = re.compile(r"^[A-Za-z_][\w-]*:")
_BLOCK_SCALAR = re.compile(r":\s*[|>][-+]?\s*$")
_LOOSE = re.compile(
    r"next_agent:\s*[\"']?(\w+)[\"']?\s*(?:.*?context:\s*[|>]?\s*(.*?))?(?=\n[a-z_]+:|$)",
    re.IGNORECASE | re.DOTALL,
)


class HandoffProtocolError(RuntimeError):
    """The agent finished without a handoff naming a known agent."""

    def __init__(self, message: str, *, forced_result: RunResult | None = None) -> None:
        super().__init__(message)
        self.forced_result = forced_result


def valid_agents(known_agents: Iterable[str] | None = None) -> list[str]:
    agents = list(known_agents) if known_agents is not None else list(DEFAULT_KNOWN_AGENTS)
    return [*agents, DONE, BLOCKED]


def is_valid_agent(name: str, known_agents: Iterable[str] | None = None) -> bool:
    return name in valid_agents(known_agents)


def validate_handoff(
    data: Any, known_agents: Iterable[str] | None = None
) -> Handoff | None:
    """Normalize a parsed mapping into a Handoff, or None when it is not one."""
    if not isinstance(data, dict):
        return None
    next_agent = data.get("next_agent", data.get("nextAgent"))
    context = data.get("context", data.get("summary", data.get("message")))
    if not isinstance(next_agent, str) or not is_valid_agent(next_agent, known_agents):
        return None
    if not isinstance(context, str):
        return None

    pr_number: int | None = None
    raw_pr = data.get("pr_number", data.get("prNumber", data.get("pr")))
    if isinstance(raw_pr, int) and not isinstance(raw_pr, bool):
        pr_number = raw_pr
    elif isinstance(raw_pr, str):
        match = re.match(r"\s*#?(\d+)", raw_pr)
        if match:
            pr_number = int(match.group(1))

    ci_status: CIStatus | None = None
    raw_ci = data.get("ci_status", data.get("ciStatus", data.get("ci")))
    if raw_ci in CI_STATUSES:
        ci_status = raw_ci

    return Handoff(
        next_agent=next_agent,
        context=context.strip(),
        pr_number=pr_number,
        ci_status=ci_status,
    )


def _load_yaml(text: str) -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return None


def _load_json(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def _inline_section(text: str, start: int) -> str:
    kept: list[str] = []
    in_block = False
    for line in text[start:].splitlines():
        if _TOP_LEVEL_KEY.match(line):
            kept.append(line)
            in_block = bool(_BLOCK_SCALAR.search(line))
            continue
        if in_block and (not line.strip() or line[:1].isspace()):
            kept.append(line)
            continue
        break
    return "\n".join(kept)


def try_parse_handoff(
    output: str, known_agents: Iterable[str] | None = None
) -> Handoff | None:
    agents = list(known_agents) if known_agents is not None else None

    # The handoff is normally the last block an agent prints.
    for block in reversed(_FENCED_YAML.findall(output)):
        handoff = validate_handoff(_load_yaml(block), agents)
        if handoff:
            return handoff
    for block in reversed(_FENCED_JSON.findall(output)):
        handoff = validate_handoff(_load_json(block), agents)
        if handoff:
            return handoff

    for match in reversed(list(_INLINE_START.finditer(output))):
        handoff = validate_handoff(_load_yaml(_inline_section(output, match.start())), agents)
        if handoff:
            return handoff

    loose = _LOOSE.search(output[-LOOSE_MATCH_CHARS:])
    if loose and is_valid_agent(loose.group(1), agents):
        context = (loose.group(2) or "").strip()
        return Handoff(next_agent=loose.group(1), context=context or "No context provided")
    return None


def format_handoff(handoff: Handoff) -> str:
    lines = [f"next_agent: {handoff.next_agent}"]
    if handoff.pr_number is not None:
        lines.append(f"pr_number: {handoff.pr_number}")
    if handoff.ci_status is not None:
        lines.append(f"ci_status: {handoff.ci_status}")
    if "\n" in handoff.context:
        lines.append("context: |")
        lines.extend(f"  {line}" for line in handoff.context.split("\n"))
    else:
        lines.append(f"context: {handoff.context}")
    return "\n".join(lines)


def format_step_context(handoff: Handoff) -> str:
    """Context carried from one step's handoff into the next step's prompt."""
    lines = [handoff.context]
    if handoff.pr_number is not None:
        lines.extend(["", f"PR: #{handoff.pr_number}"])
    if handoff.ci_status is not None:
        lines.append(f"CI Status: {handoff.ci_status}")
    return "\n".join(lines)


def format_agent_prompt(
    *,
    task_title: str,
    task_description: str,
    agent_role: str,
    workflow_context: str | None = None,
    known_agents: Iterable[str] | None = None,
) -> str:
    lines = [
        f"# Task: {task_title}",
        "",
        "## Description",
        task_description,
    ]
    if workflow_context:
        lines.extend(["", "## Workflow Context", workflow_context])
    lines.extend(
        [
            "",
            "## Your Role",
            agent_role,
            "",
            "## Handoff Instructions",
            "When you complete your work, output a handoff in this format:",
            "",
            "```yaml",
            "next_agent: <agent_name>",
            "pr_number: <number if applicable>",
            "ci_status: <pending|passed|failed if applicable>",
            "context: |",
            "  <Brief summary of what you did>",
            "  <What the next agent needs to know>",
            "```",
            "",
            "Valid next_agent values:",
        ]
    )
    for agent in valid_agents(known_agents):
        description = AGENT_DESCRIPTIONS.get(agent)
        lines.append(f"- {agent} - {description}" if description else f"- {agent}")
    return "\n".join(lines)


@dataclass(slots=True)
class HandoffResolution:
    handoff: Handoff
    forced: bool = False
    forced_result: RunResult | None = None


async def force_handoff(
    runner: AgentRunner,
    session_id: str,
    cwd: Path,
    known_agents: Iterable[str] | None = None,
) -> tuple[Handoff | None, RunResult]:
    """Resume the session for one turn and ask for the handoff explicitly."""
    agents = list(known_agents) if known_agents is not None else None
    tool_inputs: list[Any] = []

    def _capture(name: str, tool_input: Any) -> None:
        if name == HANDOFF_TOOL:
            tool_inputs.append(tool_input)

    result = await runner.resume_with_answer(
        session_id,
        FORCE_HANDOFF_PROMPT,
        cwd,
        RunOptions(max_turns=1, on_tool_use=_capture),
    )
    for tool_input in tool_inputs:
        handoff = validate_handoff(tool_input, agents)
        if handoff:
            return handoff, result
    return try_parse_handoff(result.output, agents), result


async def get_handoff(
    output: str,
    *,
    session_id: str,
    cwd: Path,
    runner: AgentRunner,
    known_agents: Iterable[str] | None = None,
    force: bool = True,
) -> HandoffResolution:
    handoff = try_parse_handoff(output, known_agents)
    if handoff:
        return HandoffResolution(handoff=handoff)
    if not force or not session_id:
        raise HandoffProtocolError("Agent output contained no valid handoff.")

    logger.info("handoff_missing_forcing", session_id=session_id)
    forced, result = await force_handoff(runner, session_id, cwd, known_agents)
    if forced is None:
        raise HandoffProtocolError(
            "Agent failed to produce a valid handoff, even when asked directly.",
            forced_result=result,
        )
    return HandoffResolution(handoff=forced, forced=True, forced_result=result)
