"""Calendar route handlers. Flask objects and the event store are injected by app.py."""
from services.description_service import description_payload, encode_description, normalize_subtasks, toggle_subtask
from services.materialize_service import (
    MaterializationError,
    SeriesMismatch,
    derive_instants,
    materialize_occurrences,
    template_group_id,
)
from services.recurrence_service import (
    RecurrenceError,
    REPEAT_NONE,
    RecurrenceRule,
    is_repeating,
    list_repeat_options,
    normalize_repeat_option,
)
from services.scope_service import EventNotFound, ScopeError, apply_scoped_delete, apply_scoped_update, parse_scope
from services.validation_service import (
    parse_bool,
    parse_day_value,
    parse_days_of_week,
    parse_positive_int,
    parse_time_str,
)

# materialize_until without a count walks this many dates before filtering.
UNTIL_SCAN_COUNT = 365


class RequestError(ValueError):
    def __init__(self, code, message, status=400, **context):
        super().__init__(message)
        self.code = code
        self.status = status
        self.context = context


def _error(jsonify, code, message, status=400, **context):
    body = {'error': message, 'code': code}
    body.update(context)
    return jsonify(body), status


def _field(data, snake, camel=None):
    if snake in data:
        return data.get(snake)
    if camel and camel in data:
        return data.get(camel)
    return None


def _has(data, snake, camel=None):
    return snake in data or (camel is not None and camel in data)


def serialize_event(record):
    payload = description_payload(record.get('description'))
    return {
        'id': record.get('id'),
        'user_id': record.get('user_id'),
        'course_id': record.get('course_id'),
        'title': record.get('title'),
        'type': record.get('type'),
        'date': record['date'].isoformat() if record.get('date') else None,
        'time': record['time'].strftime('%H:%M') if record.get('time') else None,
        'duration_minutes': record.get('duration_minutes'),
        'start_at': record['start_at'].isoformat() if record.get('start_at') else None,
        'end_at': record['end_at'].isoformat() if record.get('end_at') else None,
        'description': record.get('description'),
        'text': payload.text,
        'subtasks': [s.to_dict() for s in payload.subtasks],
        'recurrence_group_id': record.get('recurrence_group_id'),
        'occurrence_index': record.get('occurrence_index'),
        'archived': bool(record.get('archived')),
        'created_at': record['created_at'].isoformat() if record.get('created_at') else None,
        'updated_at': record['updated_at'].isoformat() if record.get('updated_at') else None,
    }


def _parse_time_field(data):
    raw = _field(data, 'time', 'startTime')
    if raw in (None, ''):
        return None
    parsed = parse_time_str(raw)
    if parsed is None:
        raise RequestError('INVALID_TIME', 'Invalid time', time=raw)
    return parsed


def _parse_duration_field(data):
    raw = _field(data, 'duration_minutes', 'durationMinutes')
    if raw in (None, ''):
        return None
    parsed = parse_positive_int(raw)
    if parsed is None:
        raise RequestError('INVALID_DURATION', 'duration_minutes must be a positive integer', duration_minutes=raw)
    return parsed


def _parse_subtasks_field(data):
    raw = data.get('subtasks')
    if raw is None:
        return []
    subtasks = normalize_subtasks(raw)
    if subtasks is None:
        raise RequestError('INVALID_SUBTASKS', 'subtasks must be a list of objects')
    return subtasks


def build_template(data, user_id):
    title = (data.get('title') or '').strip()
    if not title:
        raise RequestError('TITLE_REQUIRED', 'Title is required')
    description = encode_description(data.get('description') or data.get('notes'), _parse_subtasks_field(data))
    return {
        'user_id': user_id,
        'course_id': _field(data, 'course_id', 'courseId'),
        'title': title,
        'type': (data.get('type') or 'event').strip() or 'event',
        'time': _parse_time_field(data),
        'duration_minutes': _parse_duration_field(data),
        'description': description,
    }


def _parse_repeat_option(raw):
    try:
        return normalize_repeat_option(raw)
    except RecurrenceError as exc:
        raise RequestError('INVALID_REPEAT_OPTION', str(exc), repeat_option=exc.repeat_option)


def build_rule(data, start_day, default_max_count):
    repeat_option = _parse_repeat_option(_field(data, 'repeat_option', 'repeatOption'))

    raw_count = _field(data, 'materialize_count', 'materializeCount')
    count = parse_positive_int(raw_count)
    if raw_count not in (None, '') and count is None:
        raise RequestError('INVALID_MATERIALIZE_COUNT', 'materialize_count must be a positive integer',
                           materialize_count=raw_count)

    raw_until = _field(data, 'materialize_until', 'materializeUntil')
    until = None
    if raw_until not in (None, ''):
        until = parse_day_value(raw_until)
        if until is None:
            raise RequestError('INVALID_UNTIL', 'Invalid materialize_until date', materialize_until=raw_until)

    if count:
        max_count = count
    elif until:
        max_count = UNTIL_SCAN_COUNT
    else:
        max_count = default_max_count

    interval = parse_positive_int(data.get('interval'), default=1)
    by_days = parse_days_of_week(_field(data, 'by_days', 'byDays'))
    return RecurrenceRule(
        start_date=start_day,
        repeat_option=repeat_option,
        max_count=max_count,
        interval=interval,
        by_days=by_days,
        until=until,
    )


def wants_materialize(data):
    return bool(
        parse_bool(data.get('materialize'))
        or _field(data, 'materialize_count', 'materializeCount')
        or _field(data, 'materialize_until', 'materializeUntil')
    )


def _materialization_failed(jsonify, exc):
    return _error(
        jsonify,
        'MATERIALIZATION_INCOMPLETE',
        'Failed to materialize all occurrences; retry to complete the series',
        status=503,
        retryable=True,
        recurrence_group_id=exc.recurrence_group_id,
        failed_index=exc.occurrence_index,
        created_ids=[ev['id'] for ev in exc.created],
    )


def _series_mismatch(jsonify, exc):
    return _error(
        jsonify,
        'SERIES_MISMATCH',
        str(exc),
        status=409,
        recurrence_group_id=exc.recurrence_group_id,
        occurrence_index=exc.occurrence_index,
        field=exc.field,
    )


def wants_template(data):
    return bool(
        parse_bool(_field(data, 'is_template', 'isTemplate'))
        or isinstance(_field(data, 'template_modules', 'templateModules'), list)
    )


def _parse_template_modules(data):
    modules = _field(data, 'template_modules', 'templateModules')
    if modules is None:
        modules = _field(data, 'template_payload', 'templatePayload')
    if modules is None:
        return None
    if not isinstance(modules, list) or not all(isinstance(m, dict) for m in modules):
        raise RequestError('INVALID_TEMPLATE', 'template_modules must be a list of objects')
    return modules


def serialize_template(record):
    return {
        'id': record.get('id'),
        'title': record.get('title'),
        'course_id': record.get('course_id'),
        'repeat_option': record.get('repeat_option'),
        'start_date': record['start_date'].isoformat() if record.get('start_date') else None,
        'modules': record.get('modules'),
        'created_at': record['created_at'].isoformat() if record.get('created_at') else None,
    }


def _create_template(data, user, *, jsonify, make_store, today, logger):
    """Save a timetable template; no events are written until it is materialized."""
    try:
        raw_option = _field(data, 'repeat_option', 'repeatOption')
        repeat_option = _parse_repeat_option(raw_option) if raw_option not in (None, '') else None
        raw_date = data.get('date')
        start_day = parse_day_value(raw_date) if raw_date else None
        if raw_date and not start_day:
            raise RequestError('INVALID_DATE', 'Invalid date', date=raw_date)
        if start_day and start_day < today():
            raise RequestError('PAST_DATE', 'Cannot create events before today', date=start_day.isoformat())
        modules = _parse_template_modules(data)
    except RequestError as exc:
        return _error(jsonify, exc.code, str(exc), status=exc.status, **exc.context)

    template = make_store(user).create_template({
        'user_id': user.id,
        'title': (data.get('title') or '').strip() or None,
        'course_id': _field(data, 'course_id', 'courseId'),
        'repeat_option': repeat_option,
        'start_date': start_day,
        'modules': modules,
    })
    logger.info(f"Created event template {template['id']} for user {user.id} ({len(modules or [])} modules)")
    return jsonify({'template_id': template['id'], 'template': serialize_template(template)}), 201


def create_event_route(*, request, jsonify, get_current_user, make_store, today, logger, default_max_count):
    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401

    data = request.json or {}
    if wants_template(data):
        return _create_template(data, user, jsonify=jsonify, make_store=make_store, today=today, logger=logger)

    try:
        template = build_template(data, user.id)
        raw_date = data.get('date')
        start_day = parse_day_value(raw_date) if raw_date else today()
        if not start_day:
            raise RequestError('INVALID_DATE', 'Invalid date', date=raw_date)
        if start_day < today():
            raise RequestError('PAST_DATE', 'Cannot create events before today', date=start_day.isoformat())

        raw_option = _field(data, 'repeat_option', 'repeatOption')
        rule = build_rule(data, start_day, default_max_count)
        if not wants_materialize(data) or rule.repeat_option == REPEAT_NONE:
            rule = None
        elif not is_repeating(raw_option):
            logger.warning(f"Materialize requested without repeat_option for user {user.id}; using weekly")
    except RequestError as exc:
        return _error(jsonify, exc.code, str(exc), status=exc.status, **exc.context)

    store = make_store(user)
    if rule is None:
        fields = dict(template)
        fields['date'] = start_day
        fields['start_at'], fields['end_at'] = derive_instants(start_day, template['time'], template['duration_minutes'])
        event = store.create(fields)
        logger.info(f"Created event {event['id']} for user {user.id}")
        return jsonify({'event': serialize_event(event), 'occurrences': []}), 201

    if not rule.dates():
        return _error(jsonify, 'NO_OCCURRENCES', 'Recurrence rule produced no occurrences',
                      repeat_option=rule.repeat_option, date=start_day.isoformat())
    try:
        occurrences = materialize_occurrences(store, rule, template)
    except MaterializationError as exc:
        return _materialization_failed(jsonify, exc)

    logger.info(
        f"Created recurring event for user {user.id}: group {occurrences[0]['recurrence_group_id']}, "
        f"{len(occurrences)} occurrences ({rule.repeat_option})"
    )
    return jsonify({
        'event': serialize_event(occurrences[0]),
        'occurrences': [serialize_event(ev) for ev in occurrences],
    }), 201


def resume_materialization_route(group_id, *, request, jsonify, get_current_user, make_store, logger, default_max_count):
    """Finish a series whose first materialization stopped part-way; already present occurrences are kept."""
    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401

    data = request.json or {}
    try:
        template = build_template(data, user.id)
        start_day = parse_day_value(data.get('date'))
        if not start_day:
            raise RequestError('INVALID_DATE', 'Invalid date', date=data.get('date'))
        rule = build_rule(data, start_day, default_max_count)
    except RequestError as exc:
        return _error(jsonify, exc.code, str(exc), status=exc.status, **exc.context)

    store = make_store(user)
    try:
        occurrences = materialize_occurrences(store, rule, template, group_id=group_id)
    except MaterializationError as exc:
        return _materialization_failed(jsonify, exc)
    except SeriesMismatch as exc:
        logger.warning(f"Refused to resume group {group_id} for user {user.id}: {exc}")
        return _series_mismatch(jsonify, exc)
    logger.info(f"Resumed materialization of group {group_id} for user {user.id}")
    return jsonify({'recurrence_group_id': group_id, 'occurrences': [serialize_event(ev) for ev in occurrences]})


def _template_module_plan(template, module, body, user_id, today, default_max_count):
    """(rule, template fields) for one saved module; template-level values fill the gaps."""
    data = dict(module)
    if not str(data.get('title') or '').strip():
        data['title'] = template.get('title')
    if not _has(data, 'course_id', 'courseId'):
        data['course_id'] = template.get('course_id')
    if not _has(data, 'repeat_option', 'repeatOption'):
        data['repeat_option'] = template.get('repeat_option') or REPEAT_NONE
    for snake, camel in (('materialize_count', 'materializeCount'), ('materialize_until', 'materializeUntil')):
        if not _has(data, snake, camel):
            data[snake] = _field(body, snake, camel)

    raw_date = data.get('date')
    start_day = parse_day_value(raw_date) if raw_date else (template.get('start_date') or today())
    if not start_day:
        raise RequestError('INVALID_DATE', 'Invalid date', date=raw_date)
    return build_rule(data, start_day, default_max_count), build_template(data, user_id)


def materialize_template_route(template_id, *, request, jsonify, get_current_user, make_store, today, logger, default_max_count):
    """Materialize every module of a saved template; each module becomes its own recurrence group."""
    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401

    body = request.get_json(silent=True) or {}
    store = make_store(user)
    template = store.get_template(template_id)
    if template is None:
        return _error(jsonify, 'NOT_FOUND', 'Template not found', status=404, id=template_id)
    modules = template.get('modules')
    if not isinstance(modules, list) or not modules or not all(isinstance(m, dict) for m in modules):
        return _error(jsonify, 'INVALID_TEMPLATE', 'Template has no modules to materialize', id=template_id)

    plans = []
    for position, module in enumerate(modules):
        try:
            plans.append(_template_module_plan(template, module, body, user.id, today, default_max_count))
        except RequestError as exc:
            return _error(jsonify, exc.code, str(exc), status=exc.status, id=template_id, module_index=position,
                          **exc.context)

    groups = []
    events = []
    for position, (rule, module_template) in enumerate(plans):
        group_id = template_group_id(template_id, position)
        try:
            occurrences = materialize_occurrences(store, rule, module_template, group_id=group_id)
        except MaterializationError as exc:
            return _materialization_failed(jsonify, exc)
        except SeriesMismatch as exc:
            logger.warning(f"Template {template_id} module {position} no longer matches group {group_id}: {exc}")
            return _series_mismatch(jsonify, exc)
        groups.append({'module_index': position, 'recurrence_group_id': group_id, 'occurrence_count': len(occurrences)})
        events.extend(occurrences)

    logger.info(f"Materialized template {template_id} for user {user.id}: {len(groups)} modules, {len(events)} events")
    return jsonify({
        'template_id': template_id,
        'groups': groups,
        'events': [serialize_event(ev) for ev in events],
    }), 201


def list_events_route(*, request, jsonify, get_current_user, make_store):
    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401

    start_raw = request.args.get('start')
    end_raw = request.args.get('end')
    start_day = parse_day_value(start_raw) if start_raw else None
    end_day = parse_day_value(end_raw) if end_raw else None
    if (start_raw and not start_day) or (end_raw and not end_day):
        return _error(jsonify, 'INVALID_RANGE', 'Invalid start or end date')
    include_archived = parse_bool(request.args.get('include_archived'))
    events = make_store(user).find_in_range(start_day, end_day, include_archived=include_archived)
    return jsonify({'events': [serialize_event(ev) for ev in events]})


def get_event_route(event_id, *, jsonify, get_current_user, make_store):
    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401
    event = make_store(user).get(event_id)
    if event is None:
        return _error(jsonify, 'NOT_FOUND', 'Event not found', status=404, id=event_id)
    return jsonify(serialize_event(event))


def parse_changes(data):
    """Translate a PATCH body into engine field changes; only keys present in the body are included."""
    changes = {}
    if 'title' in data:
        title = (data.get('title') or '').strip()
        if title:
            changes['title'] = title
    if 'type' in data:
        changes['type'] = (data.get('type') or 'event').strip() or 'event'
    if _has(data, 'course_id', 'courseId'):
        changes['course_id'] = _field(data, 'course_id', 'courseId')
    if _has(data, 'duration_minutes', 'durationMinutes'):
        changes['duration_minutes'] = _parse_duration_field(data)
    if 'archived' in data:
        changes['archived'] = parse_bool(data.get('archived'))
    if 'description' in data:
        changes['description'] = data.get('description') or ''
    if 'subtasks' in data:
        changes['subtasks'] = _parse_subtasks_field(data)
    if 'date' in data:
        day_value = parse_day_value(data.get('date'))
        if not day_value:
            raise RequestError('INVALID_DATE', 'Invalid date', date=data.get('date'))
        changes['date'] = day_value
    if _has(data, 'time', 'startTime'):
        changes['time'] = _parse_time_field(data)
    return changes


def update_event_route(event_id, *, request, jsonify, get_current_user, make_store, logger):
    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401

    data = request.get_json(silent=True) or {}
    raw_scope = request.args.get('scope') or data.get('scope')
    try:
        scope = parse_scope(raw_scope)
        changes = parse_changes(data)
    except ScopeError as exc:
        return _error(jsonify, 'INVALID_SCOPE', str(exc), scope=raw_scope, id=event_id)
    except RequestError as exc:
        return _error(jsonify, exc.code, str(exc), status=exc.status, id=event_id, **exc.context)

    store = make_store(user)
    try:
        with store.transaction():
            plan, updated = apply_scoped_update(store, event_id, scope, changes)
    except EventNotFound:
        return _error(jsonify, 'NOT_FOUND', 'Event not found', status=404, id=event_id)
    if plan.ignored:
        logger.info(f"Scoped update of event {event_id} ignored per-occurrence fields: {plan.ignored}")
    return jsonify({
        'scope': plan.scope.value,
        'affected_ids': plan.target_ids,
        'ignored_fields': plan.ignored,
        'events': [serialize_event(ev) for ev in updated],
    })


def delete_event_route(event_id, *, request, jsonify, get_current_user, make_store):
    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401

    raw_scope = request.args.get('scope')
    store = make_store(user)
    try:
        scope = parse_scope(raw_scope)
        with store.transaction():
            removed = apply_scoped_delete(store, event_id, scope)
    except ScopeError as exc:
        return _error(jsonify, 'INVALID_SCOPE', str(exc), scope=raw_scope, id=event_id)
    except EventNotFound:
        return _error(jsonify, 'NOT_FOUND', 'Event not found', status=404, id=event_id)
    return jsonify({'scope': scope.value, 'removed_ids': removed})


def toggle_subtask_route(event_id, subtask_id, *, jsonify, get_current_user, make_store):
    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401

    store = make_store(user)
    with store.transaction():
        event = store.get(event_id)
        if event is None:
            return _error(jsonify, 'NOT_FOUND', 'Event not found', status=404, id=event_id)
        try:
            description = toggle_subtask(event.get('description'), subtask_id)
        except LookupError:
            return _error(jsonify, 'NOT_FOUND', 'Subtask not found', status=404, id=event_id, subtask_id=subtask_id)
        updated = store.update(event_id, {'description': description})
    return jsonify(serialize_event(updated))


def recurrence_options_route(*, jsonify):
    return jsonify({'options': list_repeat_options()})
