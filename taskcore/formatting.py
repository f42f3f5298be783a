"""Fixed texts fed back to the model and helpers to render content for display."""

import datetime as dt

import humanize

from taskcore.messages import ContentBlock

INTERRUPTED_BY_USER = "[Response interrupted by user]"
INTERRUPTED_BY_API_ERROR = "[Response interrupted by API Error]"
INTERRUPTED_BY_FEEDBACK = "[Response interrupted by user feedback]"
INTERRUPTED_BY_TOOL_RESULT = (
    "[Response interrupted by a tool use result. Only one tool may be used at a time "
    "and should be placed at the end of the message.]"
)
NO_RESPONSE_PLACEHOLDER = "Failure: I did not provide a response."
NO_ASSISTANT_MESSAGES = (
    "Unexpected API Response: The language model did not provide any assistant messages. "
    "This may indicate an issue with the API or the model's output."
)
LOADING_SUFFIX = "\n\nLoading..."

NO_TOOLS_USED = """\
[ERROR] You did not use a tool in your previous response! Please retry with a tool use.

# Next Steps

If you have completed the user's task, use the attempt_completion tool.
If you require additional information from the user, use the ask_followup_question tool.
Otherwise, if you have not completed the task and do not need additional information, \
then proceed with the next step of the task.
(This is an automated message, so do not respond to it conversationally.)"""


def too_many_mistakes(feedback: str | None) -> str:
    return (
        "You seem to be having trouble proceeding. The user has provided the following "
        f"feedback to help guide you:\n<feedback>\n{feedback or ''}\n</feedback>"
    )


def tool_result_header(tool_name: str) -> str:
    return f"[{tool_name}] Result:"


def subtask_completed(result: str) -> str:
    return f"[new_task completed] Result: {result}"


def language_instruction(language: str) -> str:
    return f"Always speak and think in the \"{language}\" language unless instructed otherwise."


def format_content_block(block: ContentBlock) -> str:
    """Plain text rendering of a content block for the request preview."""
    if block.type == "text":
        return block.text
    if block.type == "image":
        return "[Image]"
    if block.type == "tool_use":
        params = "\n".join(f"{k}: {v}" for k, v in block.input.items())
        return f"[Tool Use: {block.name}]\n{params}"
    if isinstance(block.content, str):
        return f"[Tool Result]\n{block.content}"
    return "[Tool Result]\n" + "\n\n".join(format_content_block(b) for b in block.content)


def format_request(content: list[ContentBlock]) -> str:
    return "\n\n".join(format_content_block(b) for b in content)


def resumption_text(
    last_activity: dt.datetime,
    now: dt.datetime,
    *,
    completed: bool,
    recently_modified: bool,
    new_instructions: str | None,
) -> str:
    """Text block appended to the first user message after resuming a task."""
    ago = humanize.naturaltime(now - last_activity)
    if completed:
        head = (
            f"[TASK RESUMPTION] This task was interrupted {ago}. The task may or may not be "
            "complete, so please reassess the task context."
        )
    else:
        head = (
            f"[TASK RESUMPTION] This task was interrupted {ago}. It may or may not be complete, "
            "so please reassess the task context. Be aware that the project state may have "
            "changed since then. If the task has not been completed, retry the last step "
            "before interruption and proceed with completing the task."
        )
    parts = [head]
    if recently_modified:
        parts.append(
            "IMPORTANT: If the last tool use was a write or edit that was interrupted, the file "
            "was reverted back to its original state before the interrupted edit, and you do "
            "NOT need to re-read the file as you already have its up-to-date contents."
        )
    if new_instructions:
        parts.append(
            f"New instructions for task continuation:\n<user_message>\n{new_instructions}\n</user_message>"
        )
    return "\n\n".join(parts)
