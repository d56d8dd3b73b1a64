"""Prompt construction for the planner and the JSON repair round-trip."""

from __future__ import annotations

from collections.abc import Sequence

from dmagent.agent.models import ActionRecord

PROMPT_TOKEN_BUDGET = 20000

DECISION_SCHEMAS = [
    '{"action":"answer","answer":"text"}',
    (
        '{"action":"run_unit","unit":"name","unit_args":{"ParamName":"value",'
        '"SwitchParam":"true"},"reason":"why","answer":"optional text"}'
    ),
    (
        '{"action":"run_tool","tool":"name","tool_args":{"key":"value"},'
        '"reason":"why","answer":"optional text"}'
    ),
    (
        '{"action":"propose_unit","description":"detailed description of what the unit'
        ' should do, its inputs and outputs","reason":"why no existing unit fits"}'
    ),
]

PLANNER_CLOSING = (
    "Decide the next best step. If the task is complete, return action=answer"
    " with the final response."
)


def estimate_tokens(text: str) -> int:
    return len(text) // 4


def build_system_prompt(unit_catalog: str, tool_catalog: str) -> str:
    if not unit_catalog.strip():
        unit_catalog = "(none)"
    if not tool_catalog.strip():
        tool_catalog = "(none)"
    parts = [
        "You are an execution planner for a CLI assistant.",
        (
            "You can either answer directly, run a unit (PowerShell function or script),"
            " run a built-in tool, or propose creating a new unit."
        ),
        "",
        "Available units (PowerShell functions and scripts):",
        unit_catalog,
        "",
        "Available tools:",
        tool_catalog,
        "",
        "Return ONLY valid JSON. Use one of these schemas:",
        *DECISION_SCHEMAS,
        "",
        (
            "Catalog notation: Name* = required, Flag? = switch, Param=val = default value,"
            " Param=a|b|c = allowed values."
        ),
        "",
        "Unit argument rules:",
        "- Use unit_args (object) for named parameters, NOT the args array.",
        '- Keys are parameter names WITHOUT the leading dash (e.g. "Host" not "-Host").',
        '- For switch parameters (marked ? in catalog), set the value to "true".',
        "- ALWAYS include ALL required parameters (marked * in catalog) for the chosen unit.",
        "- Map values from the user request to the correct parameter names in the catalog.",
        (
            "  Example: user says 'search for mario in user table' with params"
            " Table*, Value*, Limit=20:"
        ),
        '  => unit_args: {"Table":"user","Value":"mario"}',
        (
            "- If a required parameter cannot be inferred from the user request at all,"
            " return action=answer and ask the user."
        ),
        (
            "- If a previous step failed with 'missing mandatory parameters', the NEXT"
            " attempt MUST include those parameters."
        ),
        "",
        "Decision process (follow in order):",
        "1. Identify the user's INTENT: what do they want to accomplish?",
        "2. Find the best matching group [Name] in the catalog for that domain.",
        "3. Pick the specific unit whose name and synopsis best match the intent.",
        (
            "4. Check required params (*): can ALL of them be inferred from the user request?"
            " If not, action=answer and ask."
        ),
        (
            "5. Map user values to the correct parameter names. Use defaults when the user"
            " did not specify optional params."
        ),
        (
            "6. If no unit or tool matches, consider action=answer for knowledge questions"
            " or action=propose_unit for new automation."
        ),
        '7. Put your reasoning in the "reason" field.',
        "",
        "General rules:",
        "- action must be answer, run_unit, run_tool, or propose_unit.",
        "- Do not invent unit or tool names; use only the catalog above.",
        (
            "- Only use propose_unit for tasks that genuinely need a new automation"
            " capability, not for general knowledge questions."
        ),
        "- If a unit requires confirmation or is destructive, mention it in the answer.",
        (
            "- Tool arguments are already listed in the catalog after 'tool_args:'."
            " Use those exact keys."
        ),
    ]
    return "\n".join(parts)


def build_user_prompt(request: str, env_context: str = "") -> str:
    parts: list[str] = []
    if env_context.strip():
        parts.extend(["Environment context:", env_context, ""])
    parts.extend(["User request:", request.strip()])
    return "\n".join(parts)


def build_repair_prompt(raw_text: str) -> str:
    return "\n".join(
        [
            "Convert the following text to valid JSON only.",
            "Do not add markdown fences.",
            "Use exactly one of these schemas:",
            *DECISION_SCHEMAS,
            "",
            "Text:",
            raw_text.strip(),
        ]
    )


def format_record_line(record: ActionRecord, *, with_step: bool) -> str:
    prefix = f"- step {record.step}: " if with_step else "- "
    line = f"{prefix}{record.action} target={record.target}"
    if record.args.strip():
        line += f" args={record.args}"
    if record.result.strip():
        line += f" result={record.result}"
    return line


def trim_to_token_budget(
    request: str,
    session_lines: Sequence[str],
    previous_lines: Sequence[str],
    history_lines: Sequence[str],
    budget: int = PROMPT_TOKEN_BUDGET,
) -> tuple[list[str], list[str], list[str]]:
    """Drop the oldest context lines until the prompt fits ``budget``.

    Prior-turn results go first, then previous prompts, then the oldest steps of
    the current turn. The request itself is never shortened.
    """
    sections = [list(session_lines), list(previous_lines), list(history_lines)]

    def total() -> int:
        return estimate_tokens(request) + sum(
            estimate_tokens("\n".join(section)) for section in sections
        )

    for section in sections:
        while section and total() > budget:
            section.pop(0)
    session, previous, history = sections
    return session, previous, history


def build_planner_prompt(
    request: str,
    history: Sequence[ActionRecord],
    previous_prompts: Sequence[str],
    session_history: Sequence[ActionRecord],
    *,
    budget: int = PROMPT_TOKEN_BUDGET,
) -> str:
    base = request.strip()
    if not history and not previous_prompts and not session_history:
        return base

    session_lines = [format_record_line(record, with_step=False) for record in session_history]
    previous_lines = [
        f"- prev {index}: {prompt.strip()}"
        for index, prompt in enumerate(previous_prompts, start=1)
        if prompt.strip()
    ]
    history_lines = [format_record_line(record, with_step=True) for record in history]

    session_lines, previous_lines, history_lines = trim_to_token_budget(
        base, session_lines, previous_lines, history_lines, budget
    )

    lines = ["Original user request:", base]
    if previous_lines:
        lines.extend(["", "Previous prompts in this interactive session:", *previous_lines])
    if session_lines:
        lines.extend(["", "Results from previous turns (context):", *session_lines])
    if history_lines:
        lines.extend(["", "Actions already executed in THIS turn:", *history_lines])
    lines.extend(["", PLANNER_CLOSING])
    return "\n".join(lines)
