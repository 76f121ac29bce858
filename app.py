import logging
import os
from datetime import datetime

import pytz
from dotenv import load_dotenv
from flask import Flask, request, jsonify, session
from sqlalchemy.exc import SQLAlchemyError

load_dotenv()

from models import db, User
from backend.event_store import EventStore
from services.calendar_routes import (
    create_event_route,
    delete_event_route,
    get_event_route,
    list_events_route,
    materialize_template_route,
    recurrence_options_route,
    resume_materialization_route,
    toggle_subtask_route,
    update_event_route,
)

logging.basicConfig(level=os.environ.get('LOG_LEVEL', 'INFO'))

app = Flask(__name__)
app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URL', 'sqlite:///planner.db')
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-production')
app.config['PERMANENT_SESSION_LIFETIME'] = 365 * 24 * 60 * 60  # 1 year in seconds
app.config['API_SHARED_KEY'] = os.environ.get('API_SHARED_KEY')  # Optional shared key for API callers
app.config['DEFAULT_TIMEZONE'] = os.environ.get('DEFAULT_TIMEZONE', 'UTC')
app.config['RECURRENCE_MAX_COUNT'] = int(os.environ.get('RECURRENCE_MAX_COUNT', 40))

db.init_app(app)

def get_current_user():
    """Resolve the current user from a shared API key + user id header, else fall back to session."""
    # Header-based auth for service callers
    api_key = request.headers.get('X-API-Key')
    api_user_id = request.headers.get('X-User-Id')
    shared_key = app.config.get('API_SHARED_KEY')
    if shared_key and api_key and api_user_id:
        try:
            api_uid_int = int(api_user_id)
        except (TypeError, ValueError):
            api_uid_int = None
        if api_uid_int and api_key == shared_key:
            user = db.session.get(User, api_uid_int)
            if user:
                return user

    # Session-based auth for browser users
    user_id = session.get('user_id')
    if user_id:
        return db.session.get(User, user_id)
    return None

with app.app_context():
    db.create_all()


def _now_local():
    tz = pytz.timezone(app.config.get('DEFAULT_TIMEZONE', 'UTC'))
    return datetime.now(tz).replace(tzinfo=None)


def _today_local():
    return _now_local().date()


def _make_store(user):
    return EventStore(db.session, user_id=user.id)


@app.errorhandler(SQLAlchemyError)
def _storage_error(exc):
    db.session.rollback()
    app.logger.error(f"Storage error on {request.method} {request.path}: {exc}")
    return jsonify({'error': 'Storage unavailable, please retry', 'code': 'STORAGE_ERROR', 'retryable': True}), 503


@app.route('/api/current-user')
def current_user_info():
    """Get current user info"""
    user = get_current_user()
    if user:
        return jsonify({'user_id': user.id, 'username': user.username})
    return jsonify({'user_id': None, 'username': None})


# Calendar API
@app.route('/api/events', methods=['GET', 'POST'])
def events_collection():
    if request.method == 'POST':
        return create_event_route(
            request=request,
            jsonify=jsonify,
            get_current_user=get_current_user,
            make_store=_make_store,
            today=_today_local,
            logger=app.logger,
            default_max_count=app.config['RECURRENCE_MAX_COUNT'],
        )
    return list_events_route(
        request=request,
        jsonify=jsonify,
        get_current_user=get_current_user,
        make_store=_make_store,
    )


@app.route('/api/events/<int:event_id>', methods=['GET', 'PATCH', 'DELETE'])
def event_detail(event_id):
    if request.method == 'DELETE':
        return delete_event_route(
            event_id,
            request=request,
            jsonify=jsonify,
            get_current_user=get_current_user,
            make_store=_make_store,
        )
    if request.method == 'PATCH':
        return update_event_route(
            event_id,
            request=request,
            jsonify=jsonify,
            get_current_user=get_current_user,
            make_store=_make_store,
            logger=app.logger,
        )
    return get_event_route(
        event_id,
        jsonify=jsonify,
        get_current_user=get_current_user,
        make_store=_make_store,
    )


@app.route('/api/events/<int:event_id>/subtasks/<subtask_id>/toggle', methods=['POST'])
def toggle_event_subtask(event_id, subtask_id):
    return toggle_subtask_route(
        event_id,
        subtask_id,
        jsonify=jsonify,
        get_current_user=get_current_user,
        make_store=_make_store,
    )


@app.route('/api/recurrence-groups/<group_id>/materialize', methods=['POST'])
def resume_materialization(group_id):
    return resume_materialization_route(
        group_id,
        request=request,
        jsonify=jsonify,
        get_current_user=get_current_user,
        make_store=_make_store,
        logger=app.logger,
        default_max_count=app.config['RECURRENCE_MAX_COUNT'],
    )


@app.route('/api/event-templates/<int:template_id>/materialize', methods=['POST'])
def materialize_event_template(template_id):
    return materialize_template_route(
        template_id,
        request=request,
        jsonify=jsonify,
        get_current_user=get_current_user,
        make_store=_make_store,
        today=_today_local,
        logger=app.logger,
        default_max_count=app.config['RECURRENCE_MAX_COUNT'],
    )


@app.route('/api/recurrence-options')
def recurrence_options():
    return recurrence_options_route(jsonify=jsonify)


if __name__ == '__main__':
    app.run(host='0.0.0.0', debug=True)
