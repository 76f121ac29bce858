"""
Client-side list helpers: swap optimistic placeholders for server-confirmed events and
merge materialized occurrences into the visible list without duplicates.

Every helper returns a new list and leaves its inputs untouched.
"""
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


@dataclass(frozen=True)
class Pending:
    temp_id: str

    @property
    def key(self) -> str:
        return str(self.temp_id)


@dataclass(frozen=True)
class Confirmed:
    id: Any

    @property
    def key(self) -> str:
        return str(self.id)


Identity = Union[Pending, Confirmed]


@dataclass(frozen=True)
class ClientEventView:
    identity: Identity
    event: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return self.identity.key

    @property
    def is_pending(self) -> bool:
        return isinstance(self.identity, Pending)


def _event_date(raw):
    if raw is None:
        return ''
    if hasattr(raw, 'isoformat'):
        raw = raw.isoformat()
    raw = str(raw)
    return raw[:10] if len(raw) >= 10 else raw


def canonical_view(server_event) -> ClientEventView:
    """Normalize a server event into a confirmed view."""
    ev = server_event or {}
    data = {
        'id': str(ev.get('id')),
        'title': ev.get('title') or 'Untitled',
        'date': _event_date(ev.get('date')),
        'time': ev.get('time') or '',
        'end_at': ev.get('end_at') or '',
        'type': ev.get('type') or 'event',
        'description': ev.get('description') or '',
        'recurrence_group_id': ev.get('recurrence_group_id'),
        'occurrence_index': ev.get('occurrence_index'),
    }
    return ClientEventView(identity=Confirmed(data['id']), event=data)


def pending_view(event, temp_id: Optional[str] = None) -> ClientEventView:
    temp_id = temp_id or f"tmp-{uuid.uuid4().hex}"
    data = dict(event or {})
    data['id'] = temp_id
    return ClientEventView(identity=Pending(temp_id), event=data)


def replace_pending(views: List[ClientEventView], temp_id, server_event) -> List[ClientEventView]:
    """
    Swap the placeholder ``temp_id`` for the confirmed event, keeping its position.

    When the confirmed id is already listed (a materialized merge got there first) the
    placeholder is dropped and the existing entry stays where it is.
    """
    confirmed = canonical_view(server_event)
    views = list(views or [])
    present = any(v.key == confirmed.key for v in views)
    out = []
    replaced = False
    for view in views:
        if not replaced and view.key == str(temp_id):
            replaced = True
            if not present:
                out.append(confirmed)
        else:
            out.append(view)
    if not replaced and not present:
        out.append(confirmed)
    return out


def merge_materialized(existing: List[ClientEventView], materialized) -> List[ClientEventView]:
    out = list(existing or [])
    seen = {v.key for v in out}
    for item in materialized or []:
        view = item if isinstance(item, ClientEventView) else canonical_view(item)
        if view.key in seen:
            continue
        out.append(view)
        seen.add(view.key)
    return out


def dedupe_by_id(views: List[ClientEventView]) -> List[ClientEventView]:
    out = []
    seen = set()
    for view in views or []:
        if view is None or view.key in ('', 'None'):
            continue
        if view.key in seen:
            continue
        seen.add(view.key)
        out.append(view)
    return out
