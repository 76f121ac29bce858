import logging
import uuid
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)

TEMPLATE_FIELDS = ('user_id', 'course_id', 'title', 'type', 'time', 'duration_minutes', 'description')
# Fields a resumed batch must agree on with the occurrences already stored.
MATCH_FIELDS = ('title', 'time', 'duration_minutes')


class SeriesMismatch(ValueError):
    """The rule or template does not describe the occurrences already stored for the group."""

    def __init__(self, message, recurrence_group_id, occurrence_index=None, field=None):
        super().__init__(message)
        self.recurrence_group_id = recurrence_group_id
        self.occurrence_index = occurrence_index
        self.field = field


class MaterializationError(RuntimeError):
    """A storage write failed part-way through a batch; re-run with the same group id to finish."""

    def __init__(self, message, recurrence_group_id, occurrence_index, created=None):
        super().__init__(message)
        self.recurrence_group_id = recurrence_group_id
        self.occurrence_index = occurrence_index
        self.created = list(created or [])


def new_group_id():
    return uuid.uuid4().hex


def template_group_id(template_id, position):
    """Stable group id for one module of a saved template, so materializing it again converges."""
    return uuid.uuid5(uuid.NAMESPACE_URL, f"event-template/{template_id}/{position}").hex


def derive_instants(day_value, time_value, duration_minutes):
    """(start_at, end_at) for a dated occurrence; all-day events (no time) get neither."""
    if day_value is None or time_value is None:
        return None, None
    start_at = datetime.combine(day_value, time_value)
    if not duration_minutes:
        return start_at, None
    return start_at, start_at + timedelta(minutes=int(duration_minutes))


def build_occurrence(template, day_value, index, group_id):
    record = {key: template.get(key) for key in TEMPLATE_FIELDS}
    record['type'] = record.get('type') or 'event'
    start_at, end_at = derive_instants(day_value, record.get('time'), record.get('duration_minutes'))
    record.update({
        'date': day_value,
        'start_at': start_at,
        'end_at': end_at,
        'recurrence_group_id': group_id,
        'occurrence_index': index,
        'archived': False,
    })
    return record


def check_existing(existing, dates, template, group_id):
    """Raise SeriesMismatch unless every stored occurrence sits where the rule puts it."""
    if not existing:
        return
    for ev in existing:
        index = ev['occurrence_index']
        if index is None or index >= len(dates) or ev['date'] != dates[index]:
            raise SeriesMismatch(
                f"Occurrence {index} of group {group_id} is not on a date of this rule",
                recurrence_group_id=group_id,
                occurrence_index=index,
                field='date',
            )
    first = existing[0]
    for key in MATCH_FIELDS:
        if (first.get(key) or None) != (template.get(key) or None):
            raise SeriesMismatch(
                f"Group {group_id} was created with a different {key}",
                recurrence_group_id=group_id,
                occurrence_index=first['occurrence_index'],
                field=key,
            )


def materialize_occurrences(store, rule, template, group_id=None):
    """
    Persist one event per date of ``rule`` and return the whole group ordered by index.

    Indexes already present for ``group_id`` are skipped, so a retry after a partial
    failure converges on the same set without duplicates.
    A retry whose rule or template disagrees with the stored occurrences raises
    ``SeriesMismatch`` before anything is written.
    """
    group_id = group_id or new_group_id()
    dates = rule.dates()

    existing = store.find_by_group(group_id)
    check_existing(existing, dates, template, group_id)
    by_index = {ev['occurrence_index']: ev for ev in existing}

    created = []
    for index, day_value in enumerate(dates):
        if index in by_index:
            continue
        record = build_occurrence(template, day_value, index, group_id)
        try:
            saved = store.create(record)
        except Exception as exc:
            logger.error(
                f"Materialization of group {group_id} stopped at occurrence {index} "
                f"({len(created)} created this run): {exc}"
            )
            raise MaterializationError(
                f"Failed to create occurrence {index} of group {group_id}",
                recurrence_group_id=group_id,
                occurrence_index=index,
                created=created,
            ) from exc
        created.append(saved)
        by_index[index] = saved

    logger.info(
        f"Materialized group {group_id}: {len(created)} created, {len(existing)} already present"
    )
    return [by_index[i] for i in sorted(by_index)]
