"""
Grade normalization and aggregation for report cards (bulletins).

Two grading schemes are supported:
  - primary: nine months, one note per subject on /20
  - secondary: three trimesters (cycles), a 'classe' note on /20 and a
    'composition' note on /40 per subject

Both are turned into one subject result on /20 per subject and period, then
aggregated into coefficient-weighted period averages and an annual average.
"""

import logging
import math
import unicodedata

PRIMARY = 'primary'
SECONDARY = 'secondary'
SCHEMES = (PRIMARY, SECONDARY)

MONTH = 'month'
CYCLE = 'cycle'

MONTH_LABELS = ('Oct.', 'Nov.', 'Déc.', 'Jan.', 'Févr.', 'Mars', 'Avril', 'Mai', 'Juin')
CYCLE_LABELS = ('1er trimestre', '2ème trimestre', '3ème trimestre')
PRIMARY_MONTH_COUNT = 9

GRADE_TYPE_CLASSE = 'classe'
GRADE_TYPE_COMPOSITION = 'composition'
NOTE_SCALES = {
    MONTH: 20,
    GRADE_TYPE_CLASSE: 20,
    GRADE_TYPE_COMPOSITION: 40,
}

MENTION_THRESHOLDS = (
    (16, 'Très Bien'),
    (14, 'Bien'),
    (12, 'Assez Bien'),
    (10, 'Passable'),
)
MENTION_FAIL = 'Insuffisant'


def round2(value):
    """Round half-up to 2 decimals on the scaled value; None stays None."""
    if value is None:
        return None
    return math.floor(float(value) * 100 + 0.5) / 100


def _issue(issues, code, message, subject_id=None, period_id=None):
    logging.warning("Bulletin data issue (%s): %s", code, message)
    if issues is not None:
        issues.append({
            'code': code,
            'subject_id': subject_id,
            'period_id': period_id,
            'message': message,
        })


def records(value, field):
    """The list held by a payload field; a missing field is an empty list."""
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{field} must be a list, got {type(value).__name__}.")
    return value


def _as_number(value):
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


# ==================== NORMALIZATION ====================

def canonical_subject_id(matiere):
    """Subject id as a string, whether the grade carries an id or a subject object."""
    if isinstance(matiere, dict):
        matiere = matiere.get('id')
    if matiere is None or matiere == '':
        return None
    if isinstance(matiere, float) and matiere.is_integer():
        matiere = int(matiere)
    return str(matiere)


def _coefficient_or_default(value):
    coef = _as_number(value)
    # A missing or zero coefficient counts as 1.
    if not coef:
        return 1.0
    return coef


def normalize_subjects(matieres, issues=None):
    """Canonical subject list [{id, name, coefficient}] from store subject records."""
    subjects = []
    seen = set()
    for matiere in records(matieres, 'matieres'):
        if not isinstance(matiere, dict):
            continue
        subject_id = canonical_subject_id(matiere.get('id'))
        if subject_id is None or subject_id in seen:
            continue
        seen.add(subject_id)
        raw_coef = matiere.get('coefficient', matiere.get('coef'))
        coefficient = _coefficient_or_default(raw_coef)
        if coefficient < 0:
            _issue(
                issues,
                'negative_coefficient',
                f"Subject {subject_id} has a negative coefficient ({coefficient}).",
                subject_id=subject_id,
            )
        subjects.append({
            'id': subject_id,
            'name': matiere.get('nom') or matiere.get('name') or '',
            'coefficient': coefficient,
        })
    return subjects


def normalize_grade_entry(raw, kind, period_id=None):
    """Canonical grade entry {id, subject_id, period_id, type, note, date}."""
    matiere = raw.get('matiere')
    if matiere is None:
        matiere = raw.get('matiere_id', raw.get('subject_id'))
    if kind == MONTH:
        grade_type = MONTH
        raw_period = raw.get('mois_id', raw.get('period_id'))
    else:
        grade_type = str(raw.get('type') or raw.get('type_examen') or '').strip().lower()
        raw_period = raw.get('cycle_id', raw.get('period_id'))
    if raw_period is None:
        raw_period = period_id
    fallback_coef = matiere.get('coef', matiere.get('coefficient')) if isinstance(matiere, dict) else None
    return {
        'id': raw.get('id'),
        'subject_id': canonical_subject_id(matiere),
        'subject_name': (matiere.get('nom') or matiere.get('name') or '') if isinstance(matiere, dict) else '',
        'subject_coefficient': _as_number(fallback_coef),
        'period_id': None if raw_period is None else str(raw_period),
        'type': grade_type,
        'note': _as_number(raw.get('note')),
        'date': raw.get('date') or '',
    }


def _label_key(label):
    text = unicodedata.normalize('NFKD', str(label or ''))
    text = ''.join(ch for ch in text if not unicodedata.combining(ch))
    return text.strip().rstrip('.').casefold()


def _make_period(kind, position, label, raw):
    raw = raw if isinstance(raw, dict) else {}
    period_id = raw.get('id')
    period_id = None if period_id is None else str(period_id)
    grade_key = 'gradeP' if kind == MONTH else 'gradeH'
    if raw.get(grade_key) is not None:
        raw_grades = records(raw[grade_key], grade_key)
    else:
        raw_grades = records(raw.get('grades'), 'grades')
    entries = [
        normalize_grade_entry(g, kind, period_id=period_id)
        for g in raw_grades
        if isinstance(g, dict)
    ]
    return {
        'kind': kind,
        'id': period_id,
        'position': position,
        'label': label,
        'entries': entries,
        'rank': _as_number(raw.get('rank')),
        'moyenne': _as_number(raw.get('moyenne')),
    }


def normalize_periods(bulletin, scheme):
    """Build the scheme's full, ordered period list from a bulletin record.

    Primary months are matched by label, so the nine months are always
    present in school-year order even when the record omits some. Secondary
    cycles are taken by their position in the record.
    """
    bulletin = bulletin or {}
    periods = []
    if scheme == PRIMARY:
        by_label = {}
        for mois in records(bulletin.get('mois'), 'mois'):
            if isinstance(mois, dict):
                by_label.setdefault(_label_key(mois.get('libelle')), mois)
        for position, label in enumerate(MONTH_LABELS):
            periods.append(_make_period(MONTH, position, label, by_label.get(_label_key(label))))
        return periods

    cycles = records(bulletin.get('cycles'), 'cycles')
    for position, default_label in enumerate(CYCLE_LABELS):
        raw = cycles[position] if position < len(cycles) else None
        label = (raw.get('libelle') if isinstance(raw, dict) else None) or default_label
        periods.append(_make_period(CYCLE, position, label, raw))
    return periods


def collect_subjects(subjects, periods, issues=None):
    """Class subjects plus subjects that only appear on grade entries.

    The class subject list stays authoritative for coefficients. A subject
    missing from it falls back to the grade's own coefficient copy, then 1.
    """
    collected = [dict(s) for s in subjects or []]
    known = {s['id'] for s in collected}
    for period in periods:
        for entry in period['entries']:
            subject_id = entry['subject_id']
            if subject_id is None or subject_id in known:
                continue
            known.add(subject_id)
            coefficient = _coefficient_or_default(entry.get('subject_coefficient'))
            if coefficient < 0:
                _issue(
                    issues,
                    'negative_coefficient',
                    f"Subject {subject_id} has a negative coefficient ({coefficient}) on its grades.",
                    subject_id=subject_id,
                    period_id=period['id'],
                )
            collected.append({
                'id': subject_id,
                'name': entry.get('subject_name') or '',
                'coefficient': coefficient,
            })
    return collected


def _note_in_scale(entry, scale, issues):
    note = entry['note']
    if note is None:
        return None
    if note < 0 or note > scale:
        _issue(
            issues,
            'note_out_of_scale',
            f"Note {note} for subject {entry['subject_id']} is outside 0..{scale}.",
            subject_id=entry['subject_id'],
            period_id=entry['period_id'],
        )
        return None
    return note


def primary_subject_results(entries, subjects, issues=None):
    """Month results: the note itself when the subject has one."""
    results = {s['id']: None for s in subjects}
    seen = set()
    for entry in entries:
        subject_id = entry['subject_id']
        if subject_id is None or subject_id in seen:
            continue
        seen.add(subject_id)
        results[subject_id] = _note_in_scale(entry, NOTE_SCALES[MONTH], issues)
    return results


def secondary_subject_results(entries, subjects, issues=None):
    """Trimester results: (classe + composition / 2) / 2 when both notes exist."""
    notes = {}
    for entry in entries:
        scale = NOTE_SCALES.get(entry['type'])
        if entry['subject_id'] is None or scale is None:
            continue
        by_type = notes.setdefault(entry['subject_id'], {})
        if entry['type'] in by_type:
            continue
        by_type[entry['type']] = _note_in_scale(entry, scale, issues)

    results = {}
    for subject in subjects:
        by_type = notes.get(subject['id'], {})
        classe = by_type.get(GRADE_TYPE_CLASSE)
        composition = by_type.get(GRADE_TYPE_COMPOSITION)
        if classe is None or composition is None:
            results[subject['id']] = None
        else:
            results[subject['id']] = (classe + composition / 2) / 2
    return results


SUBJECT_RESULT_BUILDERS = {
    MONTH: primary_subject_results,
    CYCLE: secondary_subject_results,
}


def compute_subject_results(period, subjects, issues=None):
    """Subject id -> result on /20 (or None) for one period."""
    builder = SUBJECT_RESULT_BUILDERS[period['kind']]
    return builder(period['entries'], subjects, issues)


def subject_notes(period, subject_id):
    """Raw notes of one subject in a period, keyed by grade type."""
    notes = {}
    for entry in period['entries']:
        if entry['subject_id'] == subject_id and entry['type'] not in notes:
            notes[entry['type']] = entry['note']
    return notes


# ==================== AGGREGATION ====================

def compute_period_average(subject_results, subjects):
    """Coefficient-weighted average of the defined subject results."""
    total_weighted = 0.0
    total_coefficient = 0.0
    for subject in subjects:
        result = subject_results.get(subject['id'])
        coefficient = subject['coefficient']
        if result is None or coefficient < 0:
            continue
        total_weighted += result * coefficient
        total_coefficient += coefficient
    average = total_weighted / total_coefficient if total_coefficient > 0 else None
    return {
        'total_weighted': round2(total_weighted),
        'total_coefficient': total_coefficient,
        'average': round2(average),
    }


def compute_period_total(period, subject_results, subjects):
    """The bulletin's 'Total' cell: raw notes for a month, weighted points for a cycle."""
    if period['kind'] == MONTH:
        notes = [r for r in subject_results.values() if r is not None]
        return round2(sum(notes)) if notes else None
    total = compute_period_average(subject_results, subjects)
    return total['total_weighted'] if total['total_coefficient'] > 0 else None


def compute_total_coefficient(subjects):
    return sum(s['coefficient'] for s in subjects if s['coefficient'] > 0)


def compute_annual_average(period_averages, scheme, authoritative=None):
    """Annual average over the period averages of one scheme.

    Primary divides the sum of the nine month averages by 9, months without
    grades counting as 0. Secondary averages the cycles that have a positive
    average. A positive authoritative value from the bulletin record wins.
    """
    authoritative = _as_number(authoritative)
    if authoritative and authoritative > 0:
        return round2(authoritative)

    if scheme == PRIMARY:
        total = sum(float(a or 0) for a in period_averages)
        annual = total / PRIMARY_MONTH_COUNT
    else:
        positives = [float(a) for a in period_averages if a is not None and a > 0]
        annual = sum(positives) / len(positives) if positives else 0
    return round2(annual) if annual > 0 else None


# ==================== DISPLAY HELPERS ====================

def mention_for(average):
    """Mention (appreciation) for an average on /20."""
    if average is None:
        return None
    for threshold, label in MENTION_THRESHOLDS:
        if average >= threshold:
            return label
    return MENTION_FAIL


def format_rank(rank):
    """French ordinal for a rank; empty when unranked."""
    if not rank:
        return ''
    rank = int(rank)
    if rank == 1:
        return '1er'
    return f'{rank}ème'
