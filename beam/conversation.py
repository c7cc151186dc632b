"""Conversation files: markdown with optional YAML frontmatter and '## role' sections."""

import re
from dataclasses import dataclass, field
from pathlib import Path

import frontmatter

from beam.models import ChatMessage, create_text_message

_ROLE_HEADING = re.compile(r"^##\s+(system|user|assistant)\s*$", re.IGNORECASE | re.MULTILINE)


@dataclass
class Conversation:
    messages: list[ChatMessage]
    metadata: dict = field(default_factory=dict)


def parse_conversation(text: str) -> list[ChatMessage]:
    """Split markdown into messages at '## user' / '## assistant' / '## system' headings.

    Text with no role headings is a single user message.
    """
    headings = list(_ROLE_HEADING.finditer(text))
    if not headings:
        body = text.strip()
        return [create_text_message("user", body)] if body else []

    messages: list[ChatMessage] = []
    for index, match in enumerate(headings):
        end = headings[index + 1].start() if index + 1 < len(headings) else len(text)
        body = text[match.end():end].strip()
        if body:
            messages.append(create_text_message(match.group(1).lower(), body))
    return messages


def load_conversation(file_path: Path) -> Conversation:
    """Parse a conversation file.

    Metadata keys understood by the CLI: rays (int), models (comma separated str
    or list), factory (str), gather_model (str), council (bool). If no
    frontmatter, metadata is {}.
    """
    post = frontmatter.load(str(file_path))
    return Conversation(messages=parse_conversation(post.content), metadata=dict(post.metadata))
