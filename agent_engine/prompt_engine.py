"""Prompt and output text generation for agents, delegation and clarification."""

from __future__ import annotations

import re
from typing import Mapping, Sequence

from agent_engine.schemas import (
    AddedSection,
    ClarificationQuestion,
    SkillRecord,
    SubAgentResult,
    SubAgentTask,
    ToolSearchResult,
    ToolSource,
)

ADDITIONAL_FINDINGS = re.compile(r"## Additional Findings\s*\n(.+?)(?=\n## |\Z)", re.DOTALL)

ORCHESTRATOR_PROMPT = """You are a capable assistant with access to a small set of meta-tools.

Use discover_tools to find capabilities, then execute_tool to run them.
Search memory before saying you do not know something, and store facts worth keeping.
For large requests that split into independent parts, use delegate_tasks.
If the request is ambiguous in a way that changes the outcome, use ask_user."""

SYNTHESIS_INSTRUCTIONS = """[SYNTHESIS INSTRUCTIONS]
The sections below were researched in parallel by sub-agents. Write the final report from them:
1. Include concrete data points (numbers, names, dates, quotes) verbatim. Never replace findings with placeholder headers.
2. Narrate what the findings mean; do not abstract them into generic statements.
3. Every declared section must have content. If a section failed, say what is missing instead of leaving it empty.
[END SYNTHESIS INSTRUCTIONS]"""

CLARIFICATION_TIMEOUT_MESSAGE = (
    "No response from the user within the time limit: proceed with reasonable defaults. "
    "State the assumptions you make in your answer."
)


def build_sub_agent_prompt(task: SubAgentTask, context: str) -> str:
    """System prompt for one delegated section."""
    parts = [
        "You are a specialist research agent working on a focused task as part of a larger report.",
        "",
        "## Your Assignment",
        f"**{task.title}**",
        task.description,
        "",
        "## Instructions",
        "1. Use discover_tools to find relevant tools for your task.",
        "2. Use execute_tool to gather data and information.",
        "3. Be thorough but focused: your task is specific, not open-ended.",
        "4. Return your findings as well-structured markdown.",
        '5. If you discover important related topics not in your assignment, note them under a "## Additional Findings" section.',
        "6. Do NOT use delegate_tasks or ask_user. You are a sub-agent, not an orchestrator.",
    ]
    if task.tool_hints:
        parts.append("")
        parts.append(f"Suggested tools to discover: {', '.join(task.tool_hints)}")
    if context:
        parts.append("")
        parts.append("---")
        parts.append(context)
    parts.append("")
    parts.append("## Output Format")
    parts.append("Write your findings directly. Use markdown headings, bullet points, and tables where appropriate.")
    parts.append("Do not include meta-commentary about your research process. Just present the findings.")
    return "\n".join(parts)


def build_sub_agent_message(task: SubAgentTask) -> str:
    return f"Please complete the following research task:\n\n**{task.title}**: {task.description}"


def extract_additional_findings(content: str) -> str | None:
    match = ADDITIONAL_FINDINGS.search(content)
    if not match:
        return None
    findings = match.group(1).strip()
    return findings or None


def build_report(
    report_title: str,
    results: Sequence[SubAgentResult],
    added_sections: Sequence[AddedSection] = (),
) -> str:
    """Assemble section results into one document for synthesis."""
    parts = [SYNTHESIS_INSTRUCTIONS, "", f"# {report_title}", ""]
    for result in results:
        status = "complete" if result.success else "failed"
        parts.append(f"## {result.title}")
        parts.append(f"Status: {status} | Model: {result.model_used.value}")
        parts.append("")
        parts.append(result.content.strip() or "(no content)")
        parts.append("")
    for section in added_sections:
        parts.append(f"## {section.title} (added during research)")
        parts.append("")
        parts.append(section.content.strip())
        parts.append("")
    return "\n".join(parts).rstrip() + "\n"


def report_metadata(
    report_title: str,
    results: Sequence[SubAgentResult],
    added_sections: Sequence[AddedSection] = (),
) -> dict:
    completed = sum(1 for r in results if r.success)
    return {
        "report_title": report_title,
        "total": len(results),
        "completed": completed,
        "failed": len(results) - completed,
        "sections": [
            {
                "id": r.task_id,
                "title": r.title,
                "success": r.success,
                "model_used": r.model_used.value,
                "iterations": r.iterations,
                "tools_used": r.tools_used,
            }
            for r in results
        ],
        "added_sections": [s.model_dump() for s in added_sections],
    }


def format_discovery(query: str, results: Sequence[ToolSearchResult]) -> str:
    if not results:
        return f'No tools or skills found matching "{query}". Try a different description or broader terms.'
    lines = []
    for r in results:
        prefix = "[skill] " if r.source == ToolSource.SKILL else ""
        lines.append(f"- {prefix}{r.name}: {r.description} (category: {r.category})")
    return (
        f"Found {len(results)} matching tools/skills:\n"
        + "\n".join(lines)
        + "\n\nUse execute_tool with the exact tool name to run one."
    )


def format_skill(skill: SkillRecord) -> str:
    """Render a skill as instructions for the model to follow."""
    parts = [f"# Skill: {skill.name}", f"Category: {skill.category}", "", "## Instructions", skill.instructions]
    if skill.code:
        parts.extend(["", "## Code", "```", skill.code, "```"])
    return "\n".join(parts)


def format_clarification_answers(
    questions: Sequence[ClarificationQuestion],
    answers: Mapping[str, str],
) -> str:
    """One text block pairing each prompt with its answer."""
    parts = ["The user answered your clarifying questions:", ""]
    for question in questions:
        answer = answers.get(question.id, "").strip()
        labels = {o.id: o.label for o in question.options}
        answer = labels.get(answer, answer)
        parts.append(f"Q: {question.prompt}")
        parts.append(f"A: {answer or '(no answer)'}")
        parts.append("")
    parts.append(
        "Proceed immediately with the task using these answers. "
        "Do not ask the user to confirm again or announce that you are ready."
    )
    return "\n".join(parts)
