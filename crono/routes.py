from flask import Blueprint, abort, current_app, request
import json
import time
from datetime import date

from .auth import admin_required, check_password, end_session, is_admin, start_admin_session
from .categories import (
    DEFAULT_NAME_TEMPLATE,
    category_key,
    generate_categories,
    new_category_row,
    parse_age_groups,
    parse_distances,
)
from .importer import build_participants, participant_fields, read_table, resolve_mapping
from .matching import (
    apply_category_updates,
    assign_category,
    plan_category_updates,
    recalculate_summary,
)
from .models import PUNCH_FINISH, RACE_STATUSES
from .ranking import ALL_CATEGORIES, filter_by_category, rank_results, relative_times
from . import datastore as ds


bp = Blueprint('main', __name__)

RECENT_PUNCHES = 10
LOOKUP_LIMIT = 100


def _payload() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _race_or_404(race_id: int) -> dict:
    race = ds.get_race(race_id)
    if not race:
        abort(404)
    return race


def _participant_or_404(race_id: int, participant_id: int) -> dict:
    participant = ds.get_participant(race_id, participant_id)
    if not participant:
        abort(404)
    return participant


_TRUE_WORDS = ("1", "true", "yes", "on")
_FALSE_WORDS = ("0", "false", "no", "off")


def _bool_field(data: dict, key: str, default: bool) -> bool:
    val = data.get(key, default)
    if val is None:
        return default
    if isinstance(val, bool):
        return val
    if isinstance(val, int) and val in (0, 1):
        return bool(val)
    word = str(val).strip().lower()
    if word in _TRUE_WORDS:
        return True
    if word in _FALSE_WORDS:
        return False
    abort(400, description=f"Invalid {key} '{val}'. Expected true or false.")


def _optional_int(val, what: str):
    if val in (None, ''):
        return None
    try:
        return int(val)
    except (TypeError, ValueError):
        abort(400, description=f"Invalid {what} '{val}'.")


@bp.route('/health/db')
def health_db():
    """Database connectivity check; always HTTP 200 with a status body."""
    try:
        info = ds.server_info()
    except Exception as e:  # pragma: no cover - best-effort health output
        return {'connected': False, 'status': 'error', 'error': str(e)}
    return {'connected': True, 'status': 'ok', **info}


@bp.route('/admin/schema/upgrade', methods=['POST'])
@admin_required
def schema_upgrade():
    """Create missing tables and indexes."""
    try:
        ds.ensure_schema()
    except Exception as e:  # pragma: no cover
        current_app.logger.exception("Schema upgrade failed")
        return {'ok': False, 'status': 'error', 'error': str(e)}, 500
    return {'ok': True}


# Session

@bp.route('/api/login', methods=['POST'])
def login():
    if not current_app.config.get('ADMIN_PASSWORD'):
        return {'error': 'Admin login is disabled on this server'}, 403
    password = str(_payload().get('password') or '')
    if not check_password(password):
        current_app.logger.warning("Failed admin login from %s", request.remote_addr)
        return {'error': 'Invalid password'}, 401
    start_admin_session()
    return {'status': 'ok', 'admin': True}


@bp.route('/api/logout', methods=['POST'])
def logout():
    end_session()
    return {'status': 'ok'}


@bp.route('/api/session')
def session_info():
    return {'admin': is_admin()}


# Races

def _race_fields(data: dict, partial: bool = False) -> dict:
    fields = {}
    if not partial or 'name' in data:
        name = str(data.get('name') or '').strip()
        if not name:
            abort(400, description="Race name is required.")
        fields['name'] = name
    if not partial or 'date' in data:
        raw = str(data.get('date') or '').strip()
        try:
            fields['date'] = date.fromisoformat(raw).isoformat()
        except ValueError:
            abort(400, description=f"Invalid race date '{raw}'. Expected YYYY-MM-DD.")
    if 'location' in data:
        fields['location'] = str(data.get('location') or '').strip() or None
    if 'status' in data or not partial:
        status = str(data.get('status') or 'draft').strip().lower()
        if status not in RACE_STATUSES:
            abort(400, description=f"Invalid status '{status}'.")
        fields['status'] = status
    return fields


@bp.route('/api/races')
def list_races():
    return {'races': ds.list_races()}


@bp.route('/api/races', methods=['POST'])
@admin_required
def create_race():
    race = ds.insert_race(_race_fields(_payload()))
    return {'race': race}, 201


@bp.route('/api/races/<int:race_id>')
def get_race(race_id):
    return {'race': _race_or_404(race_id)}


@bp.route('/api/races/<int:race_id>', methods=['POST'])
@admin_required
def update_race(race_id):
    _race_or_404(race_id)
    ds.update_race(race_id, _race_fields(_payload(), partial=True))
    return {'race': ds.get_race(race_id)}


@bp.route('/api/races/<int:race_id>', methods=['DELETE'])
@admin_required
def delete_race(race_id):
    _race_or_404(race_id)
    ds.delete_race(race_id)
    return {'status': 'ok'}


# Categories

@bp.route('/api/races/<int:race_id>/categories')
def list_categories(race_id):
    _race_or_404(race_id)
    cats = ds.list_categories(race_id)
    cats.sort(key=lambda c: (c['distance_km'] is None, c['distance_km'] or 0, c['age_min'] is None, c['age_min'] or 0))
    return {'categories': cats}


@bp.route('/api/races/<int:race_id>/categories', methods=['POST'])
@admin_required
def create_category(race_id):
    _race_or_404(race_id)
    data = _payload()
    try:
        row = new_category_row(
            race_id,
            data.get('distance_km'),
            data.get('sex'),
            data.get('age_min'),
            data.get('age_max'),
            template=data.get('template') or DEFAULT_NAME_TEMPLATE,
            mode=data.get('label_mode') or 'inicial',
            is_active=_bool_field(data, 'is_active', True),
        )
    except ValueError as e:
        abort(400, description=str(e))
    existing = {
        category_key(c['distance_km'], c['sex_filter'], c['age_min'], c['age_max'])
        for c in ds.list_categories(race_id)
    }
    if category_key(row['distance_km'], row['sex_filter'], row['age_min'], row['age_max']) in existing:
        abort(400, description="A category with the same distance, sex and age range already exists.")
    ds.insert_categories([row])
    return {'category': row}, 201


@bp.route('/api/races/<int:race_id>/categories/bulk', methods=['POST'])
@admin_required
def create_categories_bulk(race_id):
    _race_or_404(race_id)
    data = _payload()
    try:
        rows = generate_categories(
            race_id,
            parse_distances(str(data.get('distances') or '')),
            parse_age_groups(str(data.get('age_groups') or '')),
            data.get('sexes') or [],
            existing=ds.list_categories(race_id),
            template=data.get('template') or DEFAULT_NAME_TEMPLATE,
            mode=data.get('label_mode') or 'inicial',
            is_active=_bool_field(data, 'is_active', True),
        )
    except ValueError as e:
        abort(400, description=str(e))
    created = ds.insert_categories(rows)
    current_app.logger.info("bulk_categories race=%s created=%d", race_id, created)
    return {'created': created, 'categories': rows}, 201


@bp.route('/api/races/<int:race_id>/categories/<int:category_id>/toggle', methods=['POST'])
@admin_required
def toggle_category(race_id, category_id):
    _race_or_404(race_id)
    cat = next((c for c in ds.list_categories(race_id) if c['id'] == category_id), None)
    if cat is None:
        abort(404)
    ds.update_category(race_id, category_id, {'is_active': not cat['is_active']})
    return {'id': category_id, 'is_active': not cat['is_active']}


@bp.route('/api/races/<int:race_id>/categories/<int:category_id>', methods=['DELETE'])
@admin_required
def delete_category(race_id, category_id):
    _race_or_404(race_id)
    if not ds.delete_category(race_id, category_id):
        abort(404)
    return {'status': 'ok'}


@bp.route('/api/races/<int:race_id>/categories', methods=['DELETE'])
@admin_required
def delete_all_categories(race_id):
    _race_or_404(race_id)
    deleted = ds.delete_all_categories(race_id)
    return {'status': 'ok', 'deleted': deleted}


# Participants

def _participant_row(race: dict, data: dict) -> dict:
    """Validate a participant payload and resolve its category."""
    try:
        fields = participant_fields(data, race.get('date'))
    except ValueError as e:
        abort(400, description=str(e))
    if data.get('category_id') not in (None, ''):
        category_id = _optional_int(data.get('category_id'), 'category id')
        if category_id not in {c['id'] for c in ds.list_categories(race['id'])}:
            abort(400, description=f"Unknown category id: {category_id}.")
    else:
        cat = assign_category(
            {'sex': fields['sex'], 'age': fields['age'], 'distance_km': fields['distance_km']},
            ds.list_categories(race['id'], active_only=True),
        )
        category_id = cat['id'] if cat else None
    return {**fields, 'category_id': category_id}


@bp.route('/api/races/<int:race_id>/participants')
def list_participants(race_id):
    _race_or_404(race_id)
    return {'participants': ds.list_participants(race_id)}


@bp.route('/api/races/<int:race_id>/participants', methods=['POST'])
@admin_required
def create_participant(race_id):
    race = _race_or_404(race_id)
    row = _participant_row(race, _payload())
    if row.get('dni') and row['dni'] in set(ds.list_dnis(race_id)):
        abort(400, description=f"DNI {row['dni']} is already registered in this race.")
    created = ds.insert_participant({**row, 'race_id': race_id, 'status': 'registered'})
    # re-read for the joined category name
    return {'participant': ds.get_participant(race_id, created['id']) or created}, 201


@bp.route('/api/races/<int:race_id>/participants/<int:participant_id>')
def get_participant(race_id, participant_id):
    _race_or_404(race_id)
    return {'participant': _participant_or_404(race_id, participant_id)}


@bp.route('/api/races/<int:race_id>/participants/<int:participant_id>', methods=['POST'])
@admin_required
def update_participant(race_id, participant_id):
    race = _race_or_404(race_id)
    current = _participant_or_404(race_id, participant_id)
    row = _participant_row(race, _payload())
    if row.get('dni') and row['dni'] != current.get('dni') and row['dni'] in set(ds.list_dnis(race_id)):
        abort(400, description=f"DNI {row['dni']} is already registered in this race.")
    ds.update_participant(race_id, participant_id, row)
    return {'participant': ds.get_participant(race_id, participant_id)}


def _toggle_flag(race_id: int, participant_id: int, flag: str):
    _race_or_404(race_id)
    participant = _participant_or_404(race_id, participant_id)
    new_val = not participant.get(flag)
    ds.update_participant(race_id, participant_id, {flag: new_val})
    return {'id': participant_id, flag: new_val}


@bp.route('/api/races/<int:race_id>/participants/<int:participant_id>/chip', methods=['POST'])
@admin_required
def toggle_chip(race_id, participant_id):
    return _toggle_flag(race_id, participant_id, 'chip_delivered')


@bp.route('/api/races/<int:race_id>/participants/<int:participant_id>/kit', methods=['POST'])
@admin_required
def toggle_kit(race_id, participant_id):
    return _toggle_flag(race_id, participant_id, 'kit_delivered')


@bp.route('/api/races/<int:race_id>/participants/import', methods=['POST'])
@admin_required
def import_participants(race_id):
    """Import participants from an uploaded CSV or XLSX file.

    Form fields: ``file`` (required) and ``mapping`` (optional JSON object of
    participant field -> column header, overriding the header aliases).
    """
    race = _race_or_404(race_id)
    upload = request.files.get('file')
    if upload is None or not upload.filename:
        abort(400, description="Upload a CSV or XLSX file.")
    overrides = {}
    raw_mapping = request.form.get('mapping')
    if raw_mapping:
        try:
            overrides = json.loads(raw_mapping)
        except ValueError:
            abort(400, description="Invalid column mapping.")
        if not isinstance(overrides, dict):
            abort(400, description="Invalid column mapping.")
    try:
        headers, rows = read_table(upload.filename, upload.stream)
        mapping = resolve_mapping(headers, overrides)
    except ValueError as e:
        abort(400, description=str(e))

    result = build_participants(
        rows,
        mapping,
        race,
        categories=ds.list_categories(race_id, active_only=True),
        existing_dnis=ds.list_dnis(race_id),
    )
    current_app.logger.info(
        "import_participants race=%s rows=%d accepted=%d rejected=%d",
        race_id, len(rows), len(result['rows']), len(result['errors']),
    )
    if not result['rows']:
        return {'error': 'No valid rows to import.', 'errors': result['errors']}, 400
    inserted = ds.insert_participants(result['rows'])
    return {'inserted': inserted, 'errors': result['errors'], 'mapping': mapping}


def recalculate_race_categories(race_id: int) -> dict:
    """Recompute ``category_id`` for every participant of a race.

    Participants without age, distance or sex are left untouched. Each
    change is written as its own row update; a rejected write is logged and
    reported without stopping the batch. Two concurrent runs race with
    last-write-wins on ``category_id``.
    """
    participants = ds.list_participants(race_id)
    categories = ds.list_categories(race_id, active_only=True)
    plan = plan_category_updates(participants, categories)

    def _on_error(change, exc):
        current_app.logger.exception(
            "category update failed race=%s participant=%s", race_id, change['participant_id']
        )

    outcome = apply_category_updates(
        plan['changes'],
        lambda pid, cid: ds.set_participant_category(race_id, pid, cid),
        on_error=_on_error,
    )
    summary = recalculate_summary(plan, outcome)
    current_app.logger.info(
        "recalculate_categories race=%s checked=%d updated=%d unchanged=%d skipped=%d failed=%d unmatched=%d ambiguous=%d",
        race_id,
        summary['checked'],
        summary['updated'],
        summary['unchanged'],
        summary['skipped'],
        len(summary['failed']),
        len(summary['unmatched']),
        len(summary['ambiguous']),
    )
    return summary


@bp.route('/api/races/<int:race_id>/participants/recalculate-categories', methods=['POST'])
@admin_required
def recalculate_categories(race_id):
    _race_or_404(race_id)
    return recalculate_race_categories(race_id)


@bp.route('/api/races/<int:race_id>/lookup')
def lookup(race_id):
    _race_or_404(race_id)
    q = (request.args.get('q') or '').strip()
    if not q:
        return {'results': []}
    return {'results': ds.search_participants(race_id, q, limit=LOOKUP_LIMIT)}


# Timing

@bp.route('/api/races/<int:race_id>/timing')
def recent_punches(race_id):
    _race_or_404(race_id)
    return {'punches': ds.list_recent_timelogs(race_id, limit=RECENT_PUNCHES)}


@bp.route('/api/races/<int:race_id>/timing', methods=['POST'])
@admin_required
def record_finish(race_id):
    """Record a finish punch for a bib at the current wall-clock time."""
    _race_or_404(race_id)
    data = _payload()
    bib = str(data.get('bib') or '').strip()
    if not bib:
        abort(400, description="Enter a bib number.")
    participant = ds.find_participant_by_bib(race_id, bib)
    if not participant:
        abort(404, description=f"No participant with bib {bib} in this race.")
    punch = ds.insert_timelog({
        'race_id': race_id,
        'participant_id': participant['id'],
        'elapsed_ms': int(time.time() * 1000),
        'type': PUNCH_FINISH,
        'source': 'manual',
        'notes': str(data.get('notes') or '').strip() or None,
    })
    return {'punch': punch, 'participant': participant}, 201


# Results

@bp.route('/api/races/<int:race_id>/results')
def results(race_id):
    """Best finish per runner, fastest first, optionally for one category.

    Displayed times are gaps to the fastest shown runner; ``best_elapsed_ms``
    keeps the raw value.
    """
    race = _race_or_404(race_id)
    selected = request.args.get('category') or ALL_CATEGORIES
    if selected != ALL_CATEGORIES:
        selected = _optional_int(selected, 'category')
    ranked = rank_results(ds.list_finish_timelogs(race_id))
    shown = filter_by_category(ranked, selected)
    categories = [
        {'id': c['id'], 'name': c['name']}
        for c in sorted(ds.list_categories(race_id, active_only=True), key=lambda c: c['name'])
    ]
    return {
        'race': race,
        'category': selected,
        'categories': categories,
        'results': relative_times(shown),
    }
