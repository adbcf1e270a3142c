"""Helpers that turn parsed messages into LLM inputs and the stored rolling window."""
from typing import Dict, List

from app.services.chat_parser import ParsedMessage

SAMPLE_LINES = 300
TEXTS_PER_SIDE = 150
RECENT_CONTEXT_MESSAGES = 40

FALLBACK_SUMMARY = "A conversation between two partners."
FALLBACK_STYLE = "Casual, loving texting style with emojis."


def _label(message: ParsedMessage, me_name: str, other_name: str) -> str:
    return me_name if message.sender == me_name else other_name


def build_memory_inputs(messages: List[ParsedMessage], me_name: str, other_name: str) -> Dict[str, str]:
    """
    Inputs for memory synthesis: the tail of the conversation plus each
    side's own recent texts. Senders other than `me_name` are attributed to
    `other_name`.
    """
    sample = "\n".join(
        f"{_label(m, me_name, other_name)}: {m.text}" for m in messages[-SAMPLE_LINES:]
    )
    mine = [m.text for m in messages if m.sender == me_name]
    theirs = [m.text for m in messages if m.sender == other_name]
    return {
        "sample": sample,
        "my_texts": "\n".join(mine[-TEXTS_PER_SIDE:]),
        "partner_texts": "\n".join(theirs[-TEXTS_PER_SIDE:]),
    }


def build_recent_context(messages: List[ParsedMessage], me_name: str, other_name: str) -> str:
    return "\n".join(
        f"{_label(m, me_name, other_name)}: {m.text}" for m in messages[-RECENT_CONTEXT_MESSAGES:]
    )


def parse_recent_context(text: str) -> List[Dict[str, str]]:
    """Split a stored window back into {sender, text} pairs; unlabelled lines join the previous one."""
    entries: List[Dict[str, str]] = []
    for line in (text or "").split("\n"):
        sender, sep, body = line.partition(": ")
        if sep and sender:
            entries.append({"sender": sender, "text": body})
        elif entries and line:
            entries[-1]["text"] += "\n" + line
    return entries
