"""
Instruction (system prompt) composition.

Three templates, picked from the group name:
  - roleplay:  group name starts with "roleplay" (any case)
  - group:     any other non-empty group name
  - direct:    no group name, a 1:1 chat
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

ROLEPLAY_PREFIX = "roleplay"

ACKNOWLEDGMENT = "Instruction fully read and understood"


@dataclass
class InstructionParams:
    user_name: str = "User"
    group_name: str | None = None
    group_desc: str | None = None
    total_participants: str | None = None
    personality_prompt: str | None = None
    use_alt_api: bool = False
    include_base_instruction: bool = False
    char_name: str | None = None


def is_roleplay(group_name: str | None) -> bool:
    return bool(group_name) and group_name.lower().startswith(ROLEPLAY_PREFIX)


def _roleplay_title(group_name: str) -> str:
    return group_name[len(ROLEPLAY_PREFIX):].lstrip(" :").strip()


def format_clock(now: datetime) -> tuple[str, str]:
    """('Monday, 2024-05-06', '3:07 PM')"""
    date = f"{now.strftime('%A')}, {now.strftime('%Y-%m-%d')}"
    hour = now.hour % 12 or 12
    meridiem = "PM" if now.hour >= 12 else "AM"
    return date, f"{hour}:{now.minute:02d} {meridiem}"


def compose_instructions(
    instructions: str,
    params: InstructionParams,
    base_instruction: str = "",
    now: Callable[[], datetime] = datetime.now,
) -> str:
    """Render the instruction string that occupies slot 0 of every request."""
    date, clock = format_clock(now())
    with_base = params.use_alt_api and params.include_base_instruction and base_instruction

    head = f"Instruction: {base_instruction}\n\n" if with_base else ""
    if params.personality_prompt:
        head += f"{params.personality_prompt}\n\n"
    base = f"{head}{instructions}\nCurrent date: {date}\nCurrent time: {clock}"

    if is_roleplay(params.group_name):
        preamble = f"{base_instruction}\n\n" if with_base else ""
        if params.personality_prompt:
            preamble += f"{params.personality_prompt}\n\n"
        character = params.char_name or "your character"
        return (
            f"{preamble}You are currently in a Roleplay chat with a title: "
            f"\"{_roleplay_title(params.group_name)}\"\n"
            f"Roleplay Scenario: \"{params.group_desc or ''}\"\n\n"
            f"- Follow the context and your role as {character} based on the roleplay name and scenario.\n"
            "- A message that starts and ends with * describes an action.\n"
            "- Stay in character and never write out-of-character.\n"
            "- We play turn by turn: you only ever act in your own turn, as your own character."
        )

    if params.group_name:
        return (
            f"{base}\n\nYou are currently in a Group chat called: {params.group_name} \n"
            f"Group Description: \"{params.group_desc or ''}\"\n\n"
            f"You are currently talking to one of the member with the username: \"{params.user_name}\"\n"
            f"The group chat has {params.total_participants or 'several'} participants members\n"
            "Write your response in a natural conversational style, matching the "
            "tone and typical length of the messages so far."
        )

    return (
        f"{base}\n\nYou are currently chatting to a user with a username: \"{params.user_name}\"\n"
        "Write your response in a natural conversational style, matching the "
        "tone and typical length of the user's messages so far.\n"
    )
