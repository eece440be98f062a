"""
Prompt builders for agent turns.

Only the structure the loop depends on lives here: identity, tool list,
active goals, enabled schedules, long-term memory, time and workspace.
Deployment-specific guidance (tool routing rules, site workflows) is added
by the host application through ``extra_sections``.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from .config.loader import GlobalConfig, GoalConfig, ScheduleConfig
from .memory.store import Memory

HEARTBEAT_PROMPT = """This is a periodic check-in. Review your current state and goals:

1. Are there any active goals you should be working on?
2. Are there any scheduled tasks that need attention?
3. Is there anything you've been meaning to do?

If there's nothing urgent, respond with a brief status update. If there's work to do, start on it."""

GUIDELINES = """## Important Guidelines

1. **Be Autonomous**: Work toward your goals independently. Don't ask for clarification unless absolutely necessary.
2. **Be Persistent**: If something fails, try alternative approaches.
3. **Be Efficient**: Use the right tool for the job. Don't over-explain your actions.
4. **Be Safe**: Don't perform destructive actions without being certain they're needed.
5. **Learn**: Remember important information for future reference."""


def _tool_lines(tools: Sequence[Dict]) -> str:
    lines = []
    for tool in tools:
        fn = tool.get("function", {})
        description = (fn.get("description") or "").split("\n")[0]
        lines.append(f"- {fn.get('name', '?')}: {description}")
    return "\n".join(lines)


def _goal_lines(goals: Sequence[GoalConfig]) -> str:
    lines = []
    for goal in goals:
        line = f"- [{goal.priority}] {goal.description}"
        if goal.context:
            line += f"\n  Context: {goal.context}"
        lines.append(line)
    return "\n".join(lines)


def build_system_prompt(
    config: GlobalConfig,
    memory: Optional[Memory] = None,
    goals: Optional[Sequence[GoalConfig]] = None,
    schedules: Optional[Sequence[ScheduleConfig]] = None,
    tools: Optional[Sequence[Dict]] = None,
    extra_sections: Optional[List[str]] = None,
    now: Optional[datetime] = None,
) -> str:
    """Assemble the system prompt. Empty sections are left out."""
    goals = config.goals if goals is None else goals
    schedules = config.schedules if schedules is None else schedules
    now = now or datetime.now(timezone.utc)

    sections = [f"# {config.identity.name}", config.identity.description]

    if tools:
        sections.append("## Available Tools\n\n" + _tool_lines(tools))

    active_goals = [g for g in goals if g.is_active]
    if active_goals:
        sections.append("## Active Goals\n" + _goal_lines(active_goals))

    enabled = [s for s in schedules if s.enabled]
    if enabled:
        sections.append("## Scheduled Tasks\n" + "\n".join(f"- {s.cron}: {s.action}" for s in enabled))

    if memory is not None:
        long_term = memory.get_long_term_context()
        if long_term:
            sections.append("## Memory\n" + long_term)

    sections.extend(extra_sections or [])
    sections.append(GUIDELINES)
    sections.append(f"## Current Time\n{now.isoformat()}")
    sections.append(f"## Workspace\n{config.workspace}")

    return "\n\n".join(sections) + "\n"


def build_task_prompt(task: str, context: Optional[str] = None) -> str:
    prompt = f"Your current task: {task}"
    if context:
        prompt += f"\n\nAdditional context: {context}"
    return prompt


def build_heartbeat_prompt() -> str:
    return HEARTBEAT_PROMPT
