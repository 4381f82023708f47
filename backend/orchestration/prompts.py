"""Prompt templates for the plan pipeline.

- PLANNING_SYSTEM_PROMPT: Used by the planner to decompose a request
- AGGREGATION_SYSTEM_PROMPT: Used to synthesize step outputs into one answer
- WORKER_PROMPTS: Role prompts for the default LLM worker of each type
"""

from typing import Any

from llm.parsing import truncate

PLANNING_SYSTEM_PROMPT = """\
You are an expert task planner that decomposes complex requests into atomic execution steps.

## Your Role
- Break down complex tasks into smaller, independent steps
- Identify dependencies between steps
- Assign each step to the most appropriate worker type
- Optimize for parallel execution where possible

## Worker Types
- **code**: Code review, generation, analysis, refactoring, bug fixes
- **research**: Information gathering, documentation lookup, comparisons
- **github**: PR reviews, issue management, repository operations
- **general**: Simple questions, explanations, general assistance

## Planning Guidelines
1. Each step should be atomic (single responsibility)
2. Minimize dependencies to maximize parallelism
3. Steps with no dependencies can run in parallel
4. Use descriptive IDs (e.g., "step_research_api", "step_review_code")
5. Order steps by logical sequence
6. Estimate priority (1-10, higher = more important)

## Output Format
Return a JSON object matching this schema:
{
  "taskId": "unique_task_id",
  "summary": "Brief description of what this plan accomplishes",
  "steps": [
    {
      "id": "step_unique_id",
      "description": "What this step accomplishes",
      "workerType": "code|research|github|general",
      "task": "Specific instruction for the worker",
      "dependsOn": ["ids of steps that must complete first"],
      "priority": 1-10,
      "expectedOutput": "text|code|data|action"
    }
  ],
  "estimatedComplexity": "low|medium|high",
  "estimatedDurationSeconds": optional_number
}"""

AGGREGATION_SYSTEM_PROMPT = """\
You are an expert at synthesizing results from multiple task executions into a coherent response.

## Your Role
- Combine results from multiple workers into a unified response
- Highlight key findings and insights
- Maintain logical flow and organization
- Acknowledge any failures or partial results
- Provide actionable conclusions

## Output Guidelines
- Start with a brief summary/overview
- Present results in logical order
- Use appropriate formatting (headers, bullets, code blocks)
- Highlight important findings
- Note any errors or incomplete results
- End with conclusions or next steps if appropriate"""

WORKER_PROMPTS: dict[str, str] = {
    "code": (
        "You are a senior software engineer. Review, write or analyse code as instructed. "
        "Return working code in fenced blocks and explain non-obvious decisions briefly."
    ),
    "research": (
        "You are a careful researcher. Gather the relevant facts, compare options "
        "and cite the sources you rely on. Prefer bullet points for findings."
    ),
    "github": (
        "You are a repository maintainer. Handle pull request, issue and repository "
        "questions precisely and describe any action you would take."
    ),
    "general": "You are a helpful assistant. Complete the assigned step accurately and concisely.",
}

DEPENDENCY_OUTPUT_LIMIT = 2000


def compose_prompt_sections(*sections: str) -> str:
    """Join non-empty prompt sections with blank lines."""
    cleaned = [section.strip() for section in sections if section and section.strip()]
    return "\n\n".join(cleaned)


def build_planning_prompt(
    task: str,
    max_steps: int,
    context_lines: list[str] | None = None,
) -> str:
    """Build the user message for the planner."""
    context = ""
    if context_lines:
        context = "## Context\n" + "\n".join(context_lines)

    return compose_prompt_sections(
        "Create an execution plan for the following task:",
        f"## Task\n{task}",
        context,
        f"""## Constraints
- Maximum {max_steps} steps
- Each step must be atomic and independent
- Minimize dependencies for maximum parallelism
- Return valid JSON only""",
    )


def build_aggregation_prompt(
    summary: str,
    result_sections: list[str],
    error_lines: list[str],
    total_steps: int,
    succeeded: int,
    failed: int,
    duration_ms: int,
) -> str:
    """Build the user message for result synthesis."""
    errors = ""
    if error_lines:
        errors = "## Errors\n" + "\n".join(error_lines)

    return compose_prompt_sections(
        "Synthesize the following execution results into a coherent response.",
        f"## Original Task\n{summary}",
        "## Execution Results\n" + "\n\n".join(result_sections),
        errors,
        f"""## Statistics
- Steps: {total_steps} total, {succeeded} succeeded, {failed} failed
- Duration: {duration_ms}ms""",
        "Please provide a unified response that addresses the original task.",
    )


def build_worker_prompt(task: str, dependency_outputs: dict[str, Any]) -> str:
    """Build the user message for one step, including upstream outputs."""
    sections = [f"## Your Task\n{task}"]
    if dependency_outputs:
        parts = [
            f"### {step_id}\n{truncate(str(output), DEPENDENCY_OUTPUT_LIMIT)}"
            for step_id, output in dependency_outputs.items()
        ]
        sections.append("## Results From Previous Steps\n" + "\n\n".join(parts))
    return compose_prompt_sections(*sections)
