import json

CLAUDE_SYSTEM_PROMPT = """\
You are building a project inside the current working directory.
Only read and write files inside that directory and never use absolute paths
that point elsewhere. Do not start long-running dev servers; the runner starts
them after the build finishes.
"""

CODEX_SYSTEM_PROMPT = """\
You are an autonomous coding agent building a project inside the current
working directory. Work through the task one step at a time. Only touch files
inside the working directory. Do not start long-running dev servers.
When every part of the task is finished, reply with the exact phrase
"Implementation complete" and a short summary of what you built.
"""

CODEX_CONTINUATION_PROMPT = "continue the next step"

COMPLETION_PHRASES = (
    "implementation complete",
    "build complete",
    "all tasks complete",
    "task complete",
)


def has_completion_phrase(text: str) -> bool:
    lowered = (text or "").lower()
    return any(phrase in lowered for phrase in COMPLETION_PHRASES)


def build_full_prompt(
    prompt: str,
    *,
    operation_type: str,
    project_name: str,
    context: object = None,
) -> str:
    lines = [
        f"Project: {project_name}",
        f"Operation: {operation_type}",
        "",
        prompt.strip(),
    ]
    if context:
        lines.extend(["", "Context: " + json.dumps(context, indent=2, default=str)])
    return "\n".join(lines)
