"""
Event descriptions may carry an embedded subtask checklist.

Stored form is either plain text or a JSON object ``{"subtasks": [...], "text": "..."}``.
Callers always go through ``decode_description`` / ``encode_description`` instead of
reading the raw column.
"""
import json
from dataclasses import dataclass, field
from typing import List, Optional, Union


@dataclass(frozen=True)
class Subtask:
    id: str
    text: str
    done: bool = False

    def to_dict(self):
        return {"id": self.id, "text": self.text, "done": self.done}


@dataclass(frozen=True)
class DescriptionPayload:
    text: str = ""
    subtasks: List[Subtask] = field(default_factory=list)

    def to_dict(self):
        return {"text": self.text, "subtasks": [s.to_dict() for s in self.subtasks]}


@dataclass(frozen=True)
class StructuredDescription:
    payload: DescriptionPayload
    kind: str = "structured"


@dataclass(frozen=True)
class PlainDescription:
    text: str
    kind: str = "plain"


DecodedDescription = Union[StructuredDescription, PlainDescription]


def _explicit_id(raw):
    sid = raw.id if isinstance(raw, Subtask) else raw.get("id")
    return str(sid) if sid not in (None, "") else None


def _free_id(position, taken):
    suffix = position
    while f"s{suffix}" in taken:
        suffix += 1
    return f"s{suffix}"


def _coerce_subtask(raw, sid) -> Subtask:
    if isinstance(raw, Subtask):
        return raw if raw.id == sid else Subtask(id=sid, text=raw.text, done=raw.done)
    text = raw.get("text")
    return Subtask(id=sid, text=str(text) if text is not None else "", done=bool(raw.get("done")))


def normalize_subtasks(raw_subtasks) -> Optional[List[Subtask]]:
    """
    Normalize a list of subtask dicts; None when any entry has the wrong shape.

    Ids come out unique: an entry without an id, or repeating an earlier one, gets
    ``s{position}`` bumped past every id already taken.
    """
    if not isinstance(raw_subtasks, (list, tuple)):
        return None
    if not all(isinstance(raw, (dict, Subtask)) for raw in raw_subtasks):
        return None
    explicit = {_explicit_id(raw) for raw in raw_subtasks} - {None}
    used = set()
    subtasks = []
    for position, raw in enumerate(raw_subtasks):
        sid = _explicit_id(raw)
        if sid is None or sid in used:
            sid = _free_id(position, explicit | used)
        used.add(sid)
        subtasks.append(_coerce_subtask(raw, sid))
    return subtasks


def decode_description(raw) -> DecodedDescription:
    if not raw:
        return PlainDescription(text="")
    raw = str(raw)
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return PlainDescription(text=raw)
    if not isinstance(parsed, dict):
        return PlainDescription(text=raw)
    subtasks = normalize_subtasks(parsed.get("subtasks"))
    if subtasks is None:
        return PlainDescription(text=raw)
    text = parsed.get("text")
    return StructuredDescription(
        payload=DescriptionPayload(text=str(text) if text is not None else "", subtasks=subtasks)
    )


def description_payload(raw) -> DescriptionPayload:
    decoded = decode_description(raw)
    if decoded.kind == "structured":
        return decoded.payload
    return DescriptionPayload(text=decoded.text, subtasks=[])


def encode_description(text, subtasks=None) -> Optional[str]:
    subtasks = normalize_subtasks(subtasks or []) or []
    if subtasks:
        return json.dumps({"subtasks": [s.to_dict() for s in subtasks], "text": text or ""})
    if text and str(text).strip():
        return str(text).strip()
    return None


def toggle_subtask(raw, subtask_id) -> Optional[str]:
    """Flip one subtask's done flag and return the re-encoded description."""
    payload = description_payload(raw)
    toggled = []
    found = False
    for subtask in payload.subtasks:
        if subtask.id == str(subtask_id):
            subtask = Subtask(id=subtask.id, text=subtask.text, done=not subtask.done)
            found = True
        toggled.append(subtask)
    if not found:
        raise LookupError(f"Subtask {subtask_id} not found")
    return encode_description(payload.text, toggled)
