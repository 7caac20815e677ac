"""
Bulletin Service - report card averages and class rankings

A Flask JSON service that assembles student report cards (bulletins) from the
grade record store: per-subject results, coefficient-weighted period
averages, class ranks and annual averages for the primary (monthly) and
secondary (trimester) grading schemes.
"""

from flask import Flask, request, jsonify
from flask_wtf import FlaskForm
from wtforms import StringField, SelectField, validators
from flask_wtf.csrf import CSRFProtect, CSRFError, generate_csrf

import os
import logging

import psycopg2
from dotenv import load_dotenv

import db
from grading import SCHEMES
from bulletin import assemble_bulletin, class_period_averages, class_ranking_table, detect_scheme

load_dotenv()

app = Flask(__name__)
ALLOW_INSECURE_DEFAULTS = os.environ.get('ALLOW_INSECURE_DEFAULTS', '').strip().lower() in ('1', 'true', 'yes')
secret_key = os.environ.get('SECRET_KEY')
if not secret_key:
    if ALLOW_INSECURE_DEFAULTS:
        secret_key = 'dev-secret-key-change-me'
    else:
        raise RuntimeError("SECRET_KEY is required in production. Set SECRET_KEY or enable ALLOW_INSECURE_DEFAULTS for local development.")
if not ALLOW_INSECURE_DEFAULTS and len(secret_key) < 32:
    raise RuntimeError("SECRET_KEY is too short. Use at least 32 characters in production.")
app.secret_key = secret_key
app.config['WTF_CSRF_TIME_LIMIT'] = None
app.json.sort_keys = False

csrf = CSRFProtect(app)

DATABASE_URL = os.environ.get('DATABASE_URL', '').strip()
if not DATABASE_URL.startswith(('postgres://', 'postgresql://')):
    raise RuntimeError("PostgreSQL is required. Set DATABASE_URL to a postgresql:// connection string.")

LOG_FILE = os.environ.get('LOG_FILE', 'app.log').strip() or 'app.log'
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').strip().upper() or 'INFO'
logging.basicConfig(filename=LOG_FILE, level=getattr(logging, LOG_LEVEL, logging.INFO),
                    format='%(asctime)s - %(levelname)s - %(message)s')
if ALLOW_INSECURE_DEFAULTS:
    logging.warning("ALLOW_INSECURE_DEFAULTS is enabled. Development-only fallbacks may be active.")

SCHEME_CHOICES = [('', 'Auto')] + [(s, s.capitalize()) for s in SCHEMES]


# ==================== FORMS ====================

class BulletinQueryForm(FlaskForm):
    class Meta:
        csrf = False

    classe_id = StringField('Classe', [validators.InputRequired(), validators.Length(max=64)])
    scheme = SelectField('Scheme', choices=SCHEME_CHOICES, default='')


class RankingQueryForm(FlaskForm):
    class Meta:
        csrf = False

    scheme = SelectField('Scheme', choices=SCHEME_CHOICES, default='')


def form_errors(form):
    return {field: list(errors) for field, errors in form.errors.items()}


def error_response(code, message, status, details=None):
    payload = {'error': {'code': code, 'message': message}}
    if details:
        payload['error']['details'] = details
    return jsonify(payload), status


# ==================== STORE ACCESS ====================

def load_ranking_snapshot_or_none(classe_id):
    """Server ranking, or None when it cannot be fetched (local ranking takes over)."""
    try:
        return db.load_ranking_snapshot(classe_id)
    except psycopg2.Error as exc:
        logging.warning("Ranking snapshot unavailable for classe %s: %s", classe_id, exc)
        return None


# ==================== ROUTES ====================

@app.errorhandler(CSRFError)
def csrf_error(error):
    """Handle CSRF token errors."""
    return error_response('CSRF_ERROR', error.description, 400)


@app.errorhandler(psycopg2.Error)
def store_error(error):
    logging.exception("Grade store request failed: %s", error)
    return error_response('STORE_UNAVAILABLE', 'The grade store could not be reached. Retry later.', 503)


@app.errorhandler(ValueError)
def bad_request(error):
    return error_response('BAD_REQUEST', str(error), 400)


@app.route('/api/health')
def health():
    return jsonify({'status': 'ok'})


@app.route('/api/csrf-token')
def csrf_token():
    return jsonify({'csrf_token': generate_csrf()})


@app.route('/api/bulletins/<student_id>')
def get_bulletin(student_id):
    """Bulletin of one student, loaded from the grade store."""
    form = BulletinQueryForm(formdata=request.args)
    if not form.validate():
        return error_response('INVALID_QUERY', 'Invalid bulletin query.', 400, form_errors(form))
    classe_id = form.classe_id.data.strip()

    classe = db.load_classe(classe_id)
    if not classe:
        return error_response('NOT_FOUND', f'Classe {classe_id} not found.', 404)
    bulletin = db.load_bulletin(student_id, classe_id)
    if not bulletin:
        return error_response('NOT_FOUND', f'No bulletin for student {student_id} in classe {classe_id}.', 404)

    scheme = form.scheme.data or detect_scheme(bulletin, classe)
    class_bulletins = db.load_class_bulletins(classe_id)
    class_averages = class_period_averages(classe, class_bulletins, scheme)
    result = assemble_bulletin(
        student_id,
        classe,
        bulletin,
        scheme=scheme,
        ranking_snapshot=load_ranking_snapshot_or_none(classe_id),
        class_averages=class_averages,
    )
    if result['issues']:
        logging.info("Bulletin for student %s has %d data issue(s).", student_id, len(result['issues']))
    return jsonify(result)


@app.route('/api/bulletins/compute', methods=['POST'])
def compute_bulletin():
    """Bulletin computed from a snapshot posted by the caller."""
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValueError('Expected a JSON object body.')
    student_id = payload.get('student_id')
    classe = payload.get('classe')
    bulletin = payload.get('bulletin')
    if student_id is None or str(student_id).strip() == '':
        raise ValueError('student_id is required.')
    if not isinstance(classe, dict):
        raise ValueError('classe must be an object with its matieres.')
    if bulletin is not None and not isinstance(bulletin, dict):
        raise ValueError('bulletin must be an object.')

    scheme = payload.get('scheme')
    if scheme is not None and not isinstance(scheme, str):
        raise ValueError('scheme must be a string.')
    scheme = (scheme or '').strip().lower() or detect_scheme(bulletin, classe)
    class_averages = None
    class_bulletins = payload.get('class_bulletins')
    if class_bulletins is not None:
        if not isinstance(class_bulletins, list):
            raise ValueError('class_bulletins must be a list.')
        class_averages = class_period_averages(classe, class_bulletins, scheme)

    result = assemble_bulletin(
        student_id,
        classe,
        bulletin,
        scheme=scheme,
        ranking_snapshot=payload.get('ranking_snapshot'),
        class_averages=class_averages,
    )
    return jsonify(result)


@app.route('/api/classes/<classe_id>/rankings')
def class_rankings(classe_id):
    """Per-period ranks and averages of every student of a class."""
    form = RankingQueryForm(formdata=request.args)
    if not form.validate():
        return error_response('INVALID_QUERY', 'Invalid ranking query.', 400, form_errors(form))

    classe = db.load_classe(classe_id)
    if not classe:
        return error_response('NOT_FOUND', f'Classe {classe_id} not found.', 404)
    bulletins = db.load_class_bulletins(classe_id)
    table = class_ranking_table(
        classe,
        bulletins,
        scheme=form.scheme.data or None,
        ranking_snapshot=load_ranking_snapshot_or_none(classe_id),
    )
    table['classe_id'] = str(classe['id'])
    table['class_size'] = len(table['rows'])
    return jsonify(table)


# ==================== MAIN ====================

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    debug = os.environ.get('FLASK_DEBUG', '0').strip().lower() in ('1', 'true', 'yes')
    app.run(host='0.0.0.0', port=port, debug=debug)
