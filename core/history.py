"""Conversation turns and the history optimizer.

A Turn is one role-tagged message. Its body is a list of tagged segments
(text, image, tool call) rather than a loosely shaped payload, so every
consumer handles each kind explicitly.

optimize() selects the subset of turns to submit to a provider. It never
mutates or shortens the canonical history; persistence always sees the
complete sequence.
"""

import json
import time
from dataclasses import dataclass, field


USER = "user"
ASSISTANT = "assistant"
SYSTEM = "system"

ROLES = (USER, ASSISTANT, SYSTEM)

DEFAULT_MAX_TURNS = 20
DEFAULT_MAX_CHARS = 30_000


# ============================================================
# Segments
# ============================================================

@dataclass
class TextSegment:
    text: str


@dataclass
class ImageSegment:
    mime_type: str
    data: str  # base64 payload


@dataclass
class ToolCallSegment:
    name: str
    arguments: dict = field(default_factory=dict)
    result: str | None = None


Segment = TextSegment | ImageSegment | ToolCallSegment


def segment_to_dict(seg: Segment) -> dict:
    if isinstance(seg, TextSegment):
        return {"type": "text", "text": seg.text}
    if isinstance(seg, ImageSegment):
        return {"type": "image", "mime_type": seg.mime_type, "data": seg.data}
    if isinstance(seg, ToolCallSegment):
        return {"type": "tool_call", "name": seg.name, "arguments": seg.arguments, "result": seg.result}
    raise TypeError(f"Unknown segment type: {type(seg).__name__}")


def segment_from_dict(data: dict) -> Segment:
    kind = data.get("type")
    if kind == "text":
        return TextSegment(text=data.get("text", ""))
    if kind == "image":
        return ImageSegment(mime_type=data.get("mime_type", ""), data=data.get("data", ""))
    if kind == "tool_call":
        return ToolCallSegment(
            name=data.get("name", ""),
            arguments=data.get("arguments") or {},
            result=data.get("result"),
        )
    raise ValueError(f"Unknown segment type: {kind!r}")


# ============================================================
# Turn
# ============================================================

@dataclass
class Turn:
    """One message in a conversation."""
    role: str
    segments: list = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def text(cls, role: str, content: str, timestamp: float | None = None) -> "Turn":
        """Build a plain-text turn."""
        if role not in ROLES:
            raise ValueError(f"Invalid role: {role}")
        turn = cls(role=role, segments=[TextSegment(content)])
        if timestamp is not None:
            turn.timestamp = timestamp
        return turn

    @property
    def content(self) -> str:
        """Joined text of all text segments."""
        return "".join(s.text for s in self.segments if isinstance(s, TextSegment))

    @property
    def tool_calls(self) -> list[ToolCallSegment]:
        return [s for s in self.segments if isinstance(s, ToolCallSegment)]

    def char_length(self) -> int:
        """Length counted against the optimizer budget.

        Text length plus the serialized size of any tool-call and image payloads.
        """
        total = 0
        for seg in self.segments:
            if isinstance(seg, TextSegment):
                total += len(seg.text)
            elif isinstance(seg, ToolCallSegment):
                total += len(json.dumps(segment_to_dict(seg), ensure_ascii=False))
            elif isinstance(seg, ImageSegment):
                total += len(seg.data)
        return total

    def to_dict(self) -> dict:
        return {
            "role": self.role,
            "segments": [segment_to_dict(s) for s in self.segments],
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Turn":
        role = data.get("role", USER)
        if role not in ROLES:
            raise ValueError(f"Invalid role: {role}")
        if "segments" in data:
            segments = [segment_from_dict(s) for s in data["segments"]]
        else:
            # Flat {role, content} form, as written by older saves and external tools
            segments = [TextSegment(data.get("content", ""))]
        return cls(role=role, segments=segments, timestamp=data.get("timestamp", time.time()))


# ============================================================
# Optimizer
# ============================================================

def optimize(
    turns: list[Turn],
    max_turns: int = DEFAULT_MAX_TURNS,
    max_chars: int = DEFAULT_MAX_CHARS,
) -> list[Turn]:
    """Select the most recent turns that fit both budgets.

    1. Keep only the newest max_turns turns.
    2. Walk that window newest → oldest, admitting turns while the running
       character total stays within max_chars. The first turn that would
       overflow stops the walk; nothing older is admitted.

    The result is in chronological order. A single turn larger than
    max_chars stops the walk at that turn, so if the newest turn alone is
    too large the result is empty. Tool-call/result pairs may be split at
    the cut.
    """
    if not turns or max_turns <= 0:
        return []

    window = turns[-max_turns:]
    selected: list[Turn] = []
    used = 0
    for turn in reversed(window):
        length = turn.char_length()
        if used + length > max_chars:
            break
        used += length
        selected.append(turn)

    selected.reverse()
    return selected
