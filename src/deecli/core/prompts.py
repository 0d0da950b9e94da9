"""System prompts and request text for the conversation service."""

from __future__ import annotations

from typing import Sequence

from deecli.types import Message, SourceFile

DEFAULT_SYSTEM_PROMPT = """\
You are an expert software engineer and code reviewer.
You help developers understand, improve, and debug their code.
Provide clear, actionable advice and explanations.

If tool results are already present in the conversation history, use those \
results to answer. Always base your response on the actual tool results provided."""

ANALYZE_PROMPT = """\
You are an expert code analyzer. Analyze the provided code and give:
1. Code quality assessment
2. Potential issues or bugs
3. Performance considerations
4. Best practice recommendations
5. Security concerns if any"""

IMPROVE_PROMPT = """\
You are an expert software engineer. Suggest improvements for the provided code:
1. Code optimization opportunities
2. Better algorithms or data structures
3. Improved readability and maintainability
4. Modern language features that could be used
5. Error handling improvements"""

EXPLAIN_PROMPT = """\
You are an expert code explainer. Explain the provided code clearly:
1. What the code does overall
2. Key functions and their purposes
3. Important algorithms or logic
4. Dependencies and external interactions
5. Use cases and examples"""

EDIT_SUGGESTIONS_PROMPT = """\
You are an AI assistant helping identify which files need to be edited based on a conversation.

Analyze the conversation history and loaded files, then suggest:
1. Which specific files should be modified
2. What type of changes are needed for each file
3. Priority order for making the changes
4. Brief explanation of why each file needs changes

Format your response as:
## Files to Edit

### High Priority
- **filename.ext**: Brief description of changes needed

### Medium Priority
- **filename.ext**: Brief description of changes needed

### Low Priority
- **filename.ext**: Brief description of changes needed

## Recommendations
Brief explanation of the suggested approach and order."""

# (system prompt, user request verb) per one-shot code operation
CODE_OPERATIONS = {
    "analyze": (ANALYZE_PROMPT, "analyze this code"),
    "improve": (IMPROVE_PROMPT, "suggest improvements for this code"),
    "explain": (EXPLAIN_PROMPT, "explain this code"),
}

PREVIEW_CHARS = 500


def code_request(operation: str, code: str, filename: str) -> str:
    """User turn for ``analyze``/``improve``/``explain``."""
    _, verb = CODE_OPERATIONS[operation]
    return f"Please {verb} from {filename}:\n\n```\n{code}\n```"


def code_chat_request(code: str, message: str) -> str:
    return f"{code}\n\n{message}" if code else message


def edit_suggestions_request(
    files: Sequence[SourceFile], history: Sequence[Message],
) -> str:
    """Loaded-file previews followed by the conversation transcript."""
    parts = ["=== LOADED FILES ===\n"]
    for f in files:
        parts.append(f"File: {f.path} ({f.language})\n")
        parts.append(f"Size: {f.size} bytes\n")
        parts.append("Content preview:\n")
        parts.append(f.content[:PREVIEW_CHARS])
        if len(f.content) > PREVIEW_CHARS:
            parts.append("...")
        parts.append("\n\n")

    parts.append("\n=== CONVERSATION HISTORY ===\n")
    for m in history:
        parts.append(f"{m.role}: {m.content}\n")

    return (
        "Based on this context, suggest which files should be edited:\n\n"
        + "".join(parts)
    )
