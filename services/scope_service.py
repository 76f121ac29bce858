"""Edits and deletes bounded to one occurrence, this-and-following, or a whole recurrence group."""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List

from services.description_service import description_payload, encode_description, normalize_subtasks
from services.materialize_service import derive_instants

logger = logging.getLogger(__name__)


class MutationScope(str, Enum):
    THIS = 'this'
    FOLLOWING = 'following'
    ALL = 'all'


SCOPE_ALIASES = {
    'future': MutationScope.FOLLOWING,
}

# Copied as-is onto every targeted occurrence. Description text and duration are
# also shared but merged per occurrence (subtasks, end_at) below.
SHARED_FIELDS = ('title', 'type', 'course_id', 'archived')
# Only an explicit single-occurrence edit may change these.
PER_OCCURRENCE_FIELDS = ('date', 'time', 'start_at', 'end_at', 'subtasks')


class ScopeError(ValueError):
    def __init__(self, message, scope=None):
        super().__init__(message)
        self.scope = scope


class EventNotFound(LookupError):
    def __init__(self, event_id):
        super().__init__(f"Event {event_id} not found")
        self.event_id = event_id


@dataclass
class WritePlan:
    scope: MutationScope
    target_ids: List = field(default_factory=list)
    patches: Dict = field(default_factory=dict)
    ignored: List[str] = field(default_factory=list)


def parse_scope(raw):
    if raw is None or str(raw).strip() == '':
        return MutationScope.THIS
    if isinstance(raw, MutationScope):
        return raw
    value = str(raw).strip().lower()
    if value in SCOPE_ALIASES:
        return SCOPE_ALIASES[value]
    try:
        return MutationScope(value)
    except ValueError:
        raise ScopeError(f"Unrecognized scope: {raw}", scope=raw) from None


def resolve_targets(target, group, scope):
    """Events of ``group`` selected by ``scope`` relative to ``target``."""
    if not target.get('recurrence_group_id'):
        return [target]
    if scope is MutationScope.THIS:
        return [target]
    members = [ev for ev in group if ev.get('recurrence_group_id') == target['recurrence_group_id']]
    if scope is MutationScope.FOLLOWING:
        pivot = target['occurrence_index']
        return [ev for ev in members if ev['occurrence_index'] >= pivot]
    if scope is MutationScope.ALL:
        return members
    raise ScopeError(f"Unrecognized scope: {scope}", scope=scope)


def _occurrence_patch(event, changes, allow_per_occurrence):
    patch = {}
    for key in SHARED_FIELDS:
        if key in changes:
            patch[key] = changes[key]

    if 'description' in changes or (allow_per_occurrence and 'subtasks' in changes):
        current = description_payload(event.get('description'))
        text = changes['description'] if 'description' in changes else current.text
        subtasks = current.subtasks
        if allow_per_occurrence and 'subtasks' in changes:
            subtasks = normalize_subtasks(changes['subtasks'] or []) or []
        patch['description'] = encode_description(text, subtasks)

    day_value = event.get('date')
    time_value = event.get('time')
    duration = event.get('duration_minutes')
    instants_dirty = False
    if 'duration_minutes' in changes:
        duration = changes['duration_minutes']
        patch['duration_minutes'] = duration
        instants_dirty = True
    if allow_per_occurrence:
        if 'date' in changes:
            day_value = changes['date']
            patch['date'] = day_value
            instants_dirty = True
        if 'time' in changes:
            time_value = changes['time']
            patch['time'] = time_value
            instants_dirty = True
    if instants_dirty:
        start_at, end_at = derive_instants(day_value, time_value, duration)
        patch['start_at'] = start_at
        patch['end_at'] = end_at
    if allow_per_occurrence:
        # Explicit instants win over the derived ones.
        for key in ('start_at', 'end_at'):
            if key in changes:
                patch[key] = changes[key]
    return patch


def plan_scoped_update(target, group, scope, changes):
    scope = parse_scope(scope)
    targets = resolve_targets(target, group, scope)
    allow_per_occurrence = scope is MutationScope.THIS or not target.get('recurrence_group_id')
    ignored = []
    if not allow_per_occurrence:
        ignored = [key for key in PER_OCCURRENCE_FIELDS if key in changes]
    plan = WritePlan(scope=scope, ignored=ignored)
    for event in targets:
        plan.target_ids.append(event['id'])
        patch = _occurrence_patch(event, changes, allow_per_occurrence)
        if patch:
            plan.patches[event['id']] = patch
    return plan


def _load_target_and_group(store, target_id):
    target = store.get(target_id)
    if target is None:
        raise EventNotFound(target_id)
    group = store.find_by_group(target['recurrence_group_id']) if target.get('recurrence_group_id') else [target]
    return target, group


def apply_scoped_update(store, target_id, scope, changes):
    """Resolve and write a scoped edit; returns the plan plus the updated records."""
    scope = parse_scope(scope)
    target, group = _load_target_and_group(store, target_id)
    plan = plan_scoped_update(target, group, scope, changes)
    updated = []
    for event_id in plan.target_ids:
        patch = plan.patches.get(event_id)
        if patch:
            updated.append(store.update(event_id, patch))
    logger.info(
        f"Scoped update of event {target_id} (scope: {scope.value}, events: {len(plan.target_ids)})"
    )
    return plan, updated


def apply_scoped_delete(store, target_id, scope):
    """Delete the resolved target set and return the removed ids."""
    scope = parse_scope(scope)
    target, group = _load_target_and_group(store, target_id)
    targets = resolve_targets(target, group, scope)
    removed = []
    for event in targets:
        store.delete(event['id'])
        removed.append(event['id'])
    logger.info(f"Scoped delete of event {target_id} (scope: {scope.value}, events: {len(removed)})")
    return removed
