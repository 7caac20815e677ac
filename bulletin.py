"""
Bulletin assembly: one student's report card across all periods of a scheme.

Server-computed averages and ranks take precedence whenever they are present
and non-zero; local computation fills in what the grade store did not provide.
"""

from grading import (
    PRIMARY,
    SECONDARY,
    SCHEMES,
    collect_subjects,
    compute_annual_average,
    compute_period_average,
    compute_period_total,
    compute_subject_results,
    compute_total_coefficient,
    format_rank,
    mention_for,
    normalize_periods,
    normalize_subjects,
    records,
    round2,
    subject_notes,
)
from ranking import compute_class_statistics, rank_class_periods, ranks_from_snapshot

SECONDARY_LEVELS = {'college', 'lycee'}
PERIOD_COUNTS = {PRIMARY: 9, SECONDARY: 3}


def _level_key(value):
    return str(value or '').strip().lower().replace('é', 'e')


def detect_scheme(bulletin, classe=None):
    """Grading scheme of a bulletin: cycles mean secondary, months mean primary."""
    bulletin = bulletin or {}
    if bulletin.get('cycles'):
        return SECONDARY
    if bulletin.get('mois'):
        return PRIMARY
    for source in (bulletin.get('classe'), classe):
        if isinstance(source, dict) and source.get('niveau'):
            return SECONDARY if _level_key(source['niveau']) in SECONDARY_LEVELS else PRIMARY
    return PRIMARY


def _resolve_scheme(scheme, bulletin, classe):
    if not scheme:
        return detect_scheme(bulletin, classe)
    if not isinstance(scheme, str):
        raise ValueError(f"Grading scheme must be a string, got {type(scheme).__name__}.")
    scheme = scheme.strip().lower()
    if scheme not in SCHEMES:
        raise ValueError(f"Unknown grading scheme: {scheme!r}")
    return scheme


def _class_bulletins(bulletins):
    bulletins = records(bulletins, 'bulletins')
    for bulletin in bulletins:
        if not isinstance(bulletin, dict):
            raise ValueError(f"Each bulletin must be an object, got {type(bulletin).__name__}.")
    return bulletins


def bulletin_student_id(bulletin):
    bulletin = bulletin or {}
    eleve = bulletin.get('eleve')
    if isinstance(eleve, dict) and eleve.get('id') is not None:
        return str(eleve['id'])
    for key in ('eleve_id', 'student_id'):
        if bulletin.get(key) is not None:
            return str(bulletin[key])
    return None


def class_students(classe):
    """Enrolled students of a class as [{'id', 'name'}]."""
    students = []
    for eleve in records((classe or {}).get('eleves'), 'eleves'):
        if not isinstance(eleve, dict) or eleve.get('id') is None:
            continue
        name = ' '.join(p for p in (eleve.get('prenom'), eleve.get('nom')) if p) or eleve.get('name') or ''
        students.append({'id': str(eleve['id']), 'name': name})
    return students


def _summarize_periods(bulletin, subjects, scheme, issues):
    periods = normalize_periods(bulletin, scheme)
    subjects = collect_subjects(subjects, periods, issues)
    summaries = []
    for period in periods:
        results = compute_subject_results(period, subjects, issues)
        totals = compute_period_average(results, subjects)
        server_average = period['moyenne']
        if server_average is not None and server_average > 0:
            average = round2(server_average)
        else:
            average = totals['average']
        summaries.append({
            'results': results,
            'local_average': totals['average'],
            'average': average,
            'total': compute_period_total(period, results, subjects),
        })
    return periods, subjects, summaries


def compute_period_averages(bulletin, classe, scheme=None):
    """Preferred average of every period of one bulletin (None where no grades)."""
    scheme = _resolve_scheme(scheme, bulletin, classe)
    subjects = normalize_subjects((classe or {}).get('matieres'))
    _periods, _subjects, summaries = _summarize_periods(bulletin, subjects, scheme, None)
    return [s['average'] for s in summaries]


def class_period_averages(classe, bulletins, scheme=None):
    """{student_id: [average per period]} for every student of the class.

    Enrolled students without a bulletin get no averages and are ranked last.
    """
    bulletins = _class_bulletins(bulletins)
    if not scheme:
        scheme = detect_scheme(bulletins[0] if bulletins else None, classe)
    period_count = PERIOD_COUNTS[_resolve_scheme(scheme, None, classe)]
    averages = {s['id']: [None] * period_count for s in class_students(classe)}
    for bulletin in bulletins:
        student_id = bulletin_student_id(bulletin)
        if student_id is None:
            continue
        averages[student_id] = compute_period_averages(bulletin, classe, scheme)
    return averages


def _server_rank(period, snapshot_rank):
    if snapshot_rank:
        return snapshot_rank
    rank = period['rank']
    if rank and rank > 0 and period['moyenne'] is not None:
        return int(rank)
    return 0


def assemble_bulletin(student_id, classe, bulletin, scheme=None, ranking_snapshot=None, class_averages=None):
    """Render-ready bulletin of one student.

    class_averages ({student_id: [average per period]}, see
    class_period_averages) enables the local ranking fallback and the class
    statistics; without it only server-provided ranks are reported.
    """
    classe = classe or {}
    bulletin = bulletin or {}
    student_id = str(student_id)
    scheme = _resolve_scheme(scheme, bulletin, classe)
    issues = []

    subjects = normalize_subjects(classe.get('matieres'), issues)
    periods, subjects, summaries = _summarize_periods(bulletin, subjects, scheme, issues)
    period_count = len(periods)
    averages = [s['average'] for s in summaries]

    merged_averages = None
    local_ranks = [0] * period_count
    if class_averages is not None:
        merged_averages = dict(class_averages)
        merged_averages[student_id] = averages
        local_ranks = rank_class_periods(merged_averages, period_count)[student_id]

    snapshot_ranks = ranks_from_snapshot(ranking_snapshot, student_id, period_count)
    ranks = []
    for position, period in enumerate(periods):
        ranks.append(_server_rank(period, snapshot_ranks[position]) or local_ranks[position])

    subject_rows = []
    for subject in subjects:
        per_period = []
        for period, summary in zip(periods, summaries):
            result = summary['results'].get(subject['id'])
            weighted = None
            # negative coefficients are left out of the average
            if result is not None and subject['coefficient'] >= 0:
                weighted = round2(result * subject['coefficient'])
            per_period.append({
                'notes': subject_notes(period, subject['id']),
                'result': round2(result),
                'weighted': weighted,
            })
        subject_rows.append({
            'id': subject['id'],
            'name': subject['name'],
            'coefficient': subject['coefficient'],
            'per_period': per_period,
        })

    class_statistics = [None] * period_count
    if merged_averages is not None:
        class_statistics = [
            compute_class_statistics([(a or [None] * period_count)[position] for a in merged_averages.values()])
            for position in range(period_count)
        ]

    if merged_averages is not None:
        class_size = len(merged_averages)
    else:
        class_size = len(class_students(classe)) or None

    annual_average = compute_annual_average(averages, scheme, authoritative=bulletin.get('moyenne_annuelle'))
    return {
        'student_id': student_id,
        'scheme': scheme,
        'period_labels': [p['label'] for p in periods],
        'subjects': subject_rows,
        'total_coefficient': compute_total_coefficient(subjects),
        'period_totals': [s['total'] for s in summaries],
        'period_averages': averages,
        'ranks': ranks,
        'rank_labels': [format_rank(r) for r in ranks],
        'mentions': [mention_for(a) for a in averages],
        'annual_average': annual_average,
        'annual_mention': mention_for(annual_average),
        'class_size': class_size,
        'class_statistics': class_statistics,
        'issues': issues,
    }


def assemble_class_bulletins(classe, bulletins, scheme=None, ranking_snapshot=None):
    """Assemble every bulletin of a class with one consistent local ranking."""
    bulletins = [b for b in _class_bulletins(bulletins) if bulletin_student_id(b) is not None]
    if not scheme:
        scheme = detect_scheme(bulletins[0] if bulletins else None, classe)
    class_averages = class_period_averages(classe, bulletins, scheme)
    assembled = {}
    for bulletin in bulletins:
        student_id = bulletin_student_id(bulletin)
        assembled[student_id] = assemble_bulletin(
            student_id,
            classe,
            bulletin,
            scheme=scheme,
            ranking_snapshot=ranking_snapshot,
            class_averages=class_averages,
        )
    return assembled


def class_ranking_table(classe, bulletins, scheme=None, ranking_snapshot=None):
    """One row per enrolled student: period averages, ranks and annual average.

    Rows follow the same precedence as assemble_bulletin, so a student's rank
    and annual average here match their own bulletin.
    """
    bulletins = _class_bulletins(bulletins)
    if not scheme:
        scheme = detect_scheme(bulletins[0] if bulletins else None, classe)
    scheme = _resolve_scheme(scheme, None, classe)
    period_count = PERIOD_COUNTS[scheme]
    class_averages = class_period_averages(classe, bulletins, scheme)
    by_student = {bulletin_student_id(b): b for b in bulletins}
    names = {s['id']: s['name'] for s in class_students(classe)}

    rows = []
    for student_id in class_averages:
        assembled = assemble_bulletin(
            student_id,
            classe,
            by_student.get(student_id),
            scheme=scheme,
            ranking_snapshot=ranking_snapshot,
            class_averages=class_averages,
        )
        rows.append({
            'student_id': student_id,
            'name': names.get(student_id, ''),
            'period_averages': assembled['period_averages'],
            'ranks': assembled['ranks'],
            'annual_average': assembled['annual_average'],
        })
    rows.sort(key=lambda r: (-(r['annual_average'] or 0), r['name'].lower(), r['student_id']))
    statistics = [
        compute_class_statistics([r['period_averages'][i] for r in rows])
        for i in range(period_count)
    ]
    return {'scheme': scheme, 'rows': rows, 'class_statistics': statistics}
