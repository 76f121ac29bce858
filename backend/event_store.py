"""Flask-SQLAlchemy storage for calendar events, shaped for the recurrence engine.

Records cross this boundary as plain dicts (see ``CalendarEvent.to_record``) so the
engine never holds ORM instances.
"""
import json
import logging
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError

from models import db, CalendarEvent, EventTemplate

logger = logging.getLogger(__name__)

WRITABLE_FIELDS = {
    'user_id',
    'course_id',
    'title',
    'type',
    'date',
    'time',
    'duration_minutes',
    'start_at',
    'end_at',
    'description',
    'recurrence_group_id',
    'occurrence_index',
    'archived',
}


class EventStore:
    """
    Storage collaborator: create, update, delete, find_by_group (+ get for target lookup).

    Each write commits on its own unless it runs inside ``transaction()``. Materialization
    relies on that so occurrences written before a failure survive for a resume.
    Saved timetable templates live here too.
    """

    def __init__(self, session=None, user_id=None):
        self.session = session or db.session
        self.user_id = user_id
        self._in_transaction = False

    def _query(self):
        query = self.session.query(CalendarEvent)
        if self.user_id is not None:
            query = query.filter(CalendarEvent.user_id == self.user_id)
        return query

    def _commit(self):
        if self._in_transaction:
            # ids are needed before the block commits
            self.session.flush()
            return
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error(f"Calendar event write failed: {exc}")
            raise

    @contextmanager
    def transaction(self):
        """
        Commit every write made inside the block once, on exit.

        The rows locked by ``find_by_group`` stay locked until then, so a scoped edit or
        delete is atomic against other writers of the same group. Any exception rolls the
        whole block back.
        """
        if self._in_transaction:
            yield self
            return
        self._in_transaction = True
        try:
            yield self
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error(f"Calendar event transaction rolled back: {exc}")
            raise
        except Exception:
            self.session.rollback()
            raise
        finally:
            self._in_transaction = False

    def _load(self, event_id):
        return self._query().filter(CalendarEvent.id == event_id).first()

    def get(self, event_id):
        event = self._load(event_id)
        return event.to_record() if event else None

    def create(self, fields):
        data = {k: v for k, v in fields.items() if k in WRITABLE_FIELDS}
        if self.user_id is not None:
            data.setdefault('user_id', self.user_id)
        event = CalendarEvent(**data)
        self.session.add(event)
        self._commit()
        return event.to_record()

    def update(self, event_id, patch):
        event = self._load(event_id)
        if event is None:
            raise LookupError(f"Event {event_id} not found")
        for key, value in patch.items():
            if key in WRITABLE_FIELDS and key not in ('user_id', 'recurrence_group_id', 'occurrence_index'):
                setattr(event, key, value)
        self._commit()
        return event.to_record()

    def delete(self, event_id):
        event = self._load(event_id)
        if event is None:
            return
        self.session.delete(event)
        self._commit()

    def find_by_group(self, recurrence_group_id):
        if not recurrence_group_id:
            return []
        query = self._query().filter(CalendarEvent.recurrence_group_id == recurrence_group_id)
        # SQLite has no FOR UPDATE; elsewhere the group rows stay locked until the next commit,
        # which is the end of transaction() when the caller opened one.
        if self.session.get_bind().dialect.name != 'sqlite':
            query = query.with_for_update()
        events = query.order_by(CalendarEvent.occurrence_index.asc()).all()
        return [ev.to_record() for ev in events]

    def find_in_range(self, start_day=None, end_day=None, include_archived=False):
        query = self._query()
        if start_day:
            query = query.filter(CalendarEvent.date >= start_day)
        if end_day:
            query = query.filter(CalendarEvent.date <= end_day)
        if not include_archived:
            query = query.filter(CalendarEvent.archived.is_(False))
        events = query.order_by(
            CalendarEvent.date.asc(),
            CalendarEvent.time.asc(),
            CalendarEvent.id.asc()
        ).all()
        return [ev.to_record() for ev in events]

    def create_template(self, fields):
        modules = fields.get('modules')
        template = EventTemplate(
            user_id=fields.get('user_id') or self.user_id,
            title=fields.get('title'),
            course_id=fields.get('course_id'),
            repeat_option=fields.get('repeat_option'),
            start_date=fields.get('start_date'),
            payload=json.dumps(modules) if modules is not None else None,
        )
        self.session.add(template)
        self._commit()
        return template.to_record()

    def get_template(self, template_id):
        query = self.session.query(EventTemplate).filter(EventTemplate.id == template_id)
        if self.user_id is not None:
            query = query.filter(EventTemplate.user_id == self.user_id)
        template = query.first()
        return template.to_record() if template else None
