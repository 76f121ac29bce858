import json

from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from datetime import datetime

db = SQLAlchemy()

class User(UserMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    # Relationships
    events = db.relationship('CalendarEvent', backref='owner', lazy=True, cascade="all, delete-orphan")
    event_templates = db.relationship('EventTemplate', backref='owner', lazy=True, cascade="all, delete-orphan")


class CalendarEvent(db.Model):
    """
    Single calendar entry. Events produced by materializing a recurrence rule share a
    recurrence_group_id and carry their zero-based occurrence_index inside that group.
    Dates/times are naive local values; start_at/end_at are derived from them.
    """
    __table_args__ = (
        db.UniqueConstraint('recurrence_group_id', 'occurrence_index', name='uq_calendar_event_occurrence'),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    course_id = db.Column(db.String(64), nullable=True)
    title = db.Column(db.String(200), nullable=False)
    type = db.Column(db.String(30), default='event')  # event | assignment | lecture | exam ...
    date = db.Column(db.Date, nullable=False)
    time = db.Column(db.Time, nullable=True)
    duration_minutes = db.Column(db.Integer, nullable=True)
    start_at = db.Column(db.DateTime, nullable=True)
    end_at = db.Column(db.DateTime, nullable=True)
    description = db.Column(db.Text, nullable=True)  # plain text or encoded subtask payload
    recurrence_group_id = db.Column(db.String(32), nullable=True, index=True)
    occurrence_index = db.Column(db.Integer, nullable=True)
    archived = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_record(self):
        """Plain dict with native date/time values, as consumed by the recurrence engine."""
        return {
            'id': self.id,
            'user_id': self.user_id,
            'course_id': self.course_id,
            'title': self.title,
            'type': self.type,
            'date': self.date,
            'time': self.time,
            'duration_minutes': self.duration_minutes,
            'start_at': self.start_at,
            'end_at': self.end_at,
            'description': self.description,
            'recurrence_group_id': self.recurrence_group_id,
            'occurrence_index': self.occurrence_index,
            'archived': bool(self.archived),
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }


class EventTemplate(db.Model):
    """
    Saved timetable. ``payload`` holds a JSON list of module dicts (title, date, time,
    repeat_option, ...) that stay unmaterialized until the template is materialized.
    """
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    title = db.Column(db.String(200), nullable=True)
    course_id = db.Column(db.String(64), nullable=True)
    repeat_option = db.Column(db.String(32), nullable=True)
    start_date = db.Column(db.Date, nullable=True)
    payload = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def modules(self):
        if not self.payload:
            return None
        try:
            return json.loads(self.payload)
        except (TypeError, ValueError):
            return None

    def to_record(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'title': self.title,
            'course_id': self.course_id,
            'repeat_option': self.repeat_option,
            'start_date': self.start_date,
            'modules': self.modules(),
            'created_at': self.created_at,
        }
