"""
Read-only access to the grade record store (PostgreSQL).

The store is owned by the school-administration API; this module only reads
the snapshots the bulletin engine needs. Expected tables:

  classes(id, nom, niveau)
  matieres(id, classe_id, nom, coefficient)
  eleves(id, classe_id, nom, prenom, matricule)
  bulletins(id, eleve_id, classe_id, annee_scolaire, moyenne_annuelle)
  mois(id, bulletin_id, libelle, rank, moyenne)
  grades_p(id, mois_id, matiere_id, note, date)
  cycles(id, bulletin_id, position, libelle, rank, moyenne)   -- position is 1-based
  grades_h(id, cycle_id, matiere_id, type, note, date)
  moyennes(id, eleve_id, classe_id, cycle_id, value, rank)
"""

import os
from contextlib import contextmanager

import psycopg2
from psycopg2.extras import DictCursor
from dotenv import load_dotenv

load_dotenv()


def get_database_url():
    database_url = (os.getenv("DATABASE_URL") or "").strip()
    if not database_url:
        raise RuntimeError("DATABASE_URL not found. Set it in .env")
    return database_url


def get_db():
    """Create a PostgreSQL DB connection."""
    timeout = int(os.getenv("DB_CONNECT_TIMEOUT", "10") or 10)
    return psycopg2.connect(get_database_url(), cursor_factory=DictCursor, connect_timeout=timeout)


@contextmanager
def db_connection():
    """Context manager for a read-only store connection."""
    conn = get_db()
    try:
        yield conn
    finally:
        conn.close()


def _adapt_query(query):
    return query.replace('?', '%s')


def db_execute(cursor, query, params=None):
    if params is None:
        return cursor.execute(_adapt_query(query))
    return cursor.execute(_adapt_query(query), params)


def _text(value):
    if value is None:
        return ''
    if hasattr(value, 'isoformat'):
        return value.isoformat()
    return str(value)


# ==================== CLASSES ====================

def load_classe(classe_id):
    """Class with its subjects and enrolled students, or None."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id, nom, niveau FROM classes WHERE id = ?', (classe_id,))
        row = c.fetchone()
        if not row:
            return None
        db_execute(
            c,
            'SELECT id, nom, coefficient FROM matieres WHERE classe_id = ? ORDER BY id',
            (classe_id,),
        )
        matieres = [
            {'id': r['id'], 'nom': r['nom'], 'coefficient': r['coefficient']}
            for r in c.fetchall()
        ]
        db_execute(
            c,
            'SELECT id, nom, prenom, matricule FROM eleves WHERE classe_id = ? ORDER BY nom, prenom, id',
            (classe_id,),
        )
        eleves = [
            {'id': r['id'], 'nom': r['nom'], 'prenom': r['prenom'], 'matricule': r['matricule']}
            for r in c.fetchall()
        ]
    return {
        'id': row['id'],
        'nom': row['nom'],
        'niveau': row['niveau'] or '',
        'matieres': matieres,
        'eleves': eleves,
    }


# ==================== BULLETINS ====================

def _attach_periods(c, bulletins):
    by_id = {b['id']: b for b in bulletins}
    if not by_id:
        return bulletins
    bulletin_ids = list(by_id)

    db_execute(
        c,
        'SELECT id, bulletin_id, libelle, rank, moyenne FROM mois WHERE bulletin_id = ANY(?) ORDER BY bulletin_id, id',
        (bulletin_ids,),
    )
    mois_by_id = {}
    for r in c.fetchall():
        mois = {'id': r['id'], 'libelle': r['libelle'], 'rank': r['rank'], 'moyenne': r['moyenne'], 'gradeP': []}
        mois_by_id[r['id']] = mois
        by_id[r['bulletin_id']].setdefault('mois', []).append(mois)
    if mois_by_id:
        db_execute(
            c,
            'SELECT id, mois_id, matiere_id, note, date FROM grades_p WHERE mois_id = ANY(?) ORDER BY id',
            (list(mois_by_id),),
        )
        for r in c.fetchall():
            mois_by_id[r['mois_id']]['gradeP'].append({
                'id': r['id'],
                'matiere': {'id': r['matiere_id']},
                'note': r['note'],
                'date': _text(r['date']),
            })

    db_execute(
        c,
        '''SELECT id, bulletin_id, position, libelle, rank, moyenne FROM cycles
           WHERE bulletin_id = ANY(?) ORDER BY bulletin_id, position, id''',
        (bulletin_ids,),
    )
    cycles_by_id = {}
    for r in c.fetchall():
        cycle = {'id': r['id'], 'libelle': r['libelle'], 'rank': r['rank'], 'moyenne': r['moyenne'], 'gradeH': []}
        cycles_by_id[r['id']] = cycle
        by_id[r['bulletin_id']].setdefault('cycles', []).append(cycle)
    if cycles_by_id:
        db_execute(
            c,
            'SELECT id, cycle_id, matiere_id, type, note, date FROM grades_h WHERE cycle_id = ANY(?) ORDER BY id',
            (list(cycles_by_id),),
        )
        for r in c.fetchall():
            cycles_by_id[r['cycle_id']]['gradeH'].append({
                'id': r['id'],
                'matiere': {'id': r['matiere_id']},
                'type': r['type'],
                'note': r['note'],
                'date': _text(r['date']),
            })
    return bulletins


def _bulletin_from_row(row):
    return {
        'id': row['id'],
        'eleve_id': row['eleve_id'],
        'classe': {'id': row['classe_id']},
        'annee_scolaire': row['annee_scolaire'] or '',
        'moyenne_annuelle': row['moyenne_annuelle'],
    }


def load_bulletin(student_id, classe_id):
    """Latest bulletin of a student in a class, grades attached, or None."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT id, eleve_id, classe_id, annee_scolaire, moyenne_annuelle FROM bulletins
               WHERE eleve_id = ? AND classe_id = ?
               ORDER BY id DESC
               LIMIT 1''',
            (student_id, classe_id),
        )
        row = c.fetchone()
        if not row:
            return None
        bulletins = _attach_periods(c, [_bulletin_from_row(row)])
    return bulletins[0]


def load_class_bulletins(classe_id):
    """Latest bulletin of every student of a class, grades attached."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT DISTINCT ON (eleve_id) id, eleve_id, classe_id, annee_scolaire, moyenne_annuelle
               FROM bulletins
               WHERE classe_id = ?
               ORDER BY eleve_id, id DESC''',
            (classe_id,),
        )
        bulletins = [_bulletin_from_row(r) for r in c.fetchall()]
        _attach_periods(c, bulletins)
    return bulletins


# ==================== RANKINGS ====================

def load_ranking_snapshot(classe_id):
    """Server-side ranking of a class, grouped by cycle position."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT mo.eleve_id, mo.cycle_id, mo.value, mo.rank, cy.position
               FROM moyennes mo
               JOIN cycles cy ON cy.id = mo.cycle_id
               WHERE mo.classe_id = ?
               ORDER BY cy.position, mo.rank''',
            (classe_id,),
        )
        rows = c.fetchall()
    groups = {}
    for r in rows:
        groups.setdefault(int(r['position']), []).append({
            'eleve_id': r['eleve_id'],
            'cycle_id': r['cycle_id'],
            'value': None if r['value'] is None else float(r['value']),
            'rank': r['rank'],
        })
    return {
        'cycles': [
            {'cycle_position': position, 'entries': entries}
            for position, entries in sorted(groups.items())
        ]
    }
