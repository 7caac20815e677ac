import contextlib
import datetime

import pytest

import db


class FakeCursor:
    """Returns queued result sets in query order and records the queries."""

    def __init__(self, results):
        self._results = list(results)
        self._current = []
        self.queries = []

    def execute(self, query, params=None):
        self.queries.append((query, params))
        self._current = self._results.pop(0) if self._results else []

    def fetchone(self):
        return self._current[0] if self._current else None

    def fetchall(self):
        return list(self._current)


class FakeConn:
    def __init__(self, cursor):
        self._cursor = cursor

    def cursor(self):
        return self._cursor


@pytest.fixture
def fake_store(monkeypatch):
    def install(*results):
        cursor = FakeCursor(results)

        @contextlib.contextmanager
        def fake_db_connection():
            yield FakeConn(cursor)

        monkeypatch.setattr(db, "db_connection", fake_db_connection)
        return cursor

    return install


def test_adapt_query_uses_psycopg2_placeholders():
    assert db._adapt_query("SELECT 1 WHERE a = ? AND b = ?") == "SELECT 1 WHERE a = %s AND b = %s"


def test_get_database_url_requires_configuration(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        db.get_database_url()


def test_load_classe(fake_store):
    cursor = fake_store(
        [{"id": 4, "nom": "10ème A", "niveau": "lycee"}],
        [{"id": 1, "nom": "French", "coefficient": 2}],
        [{"id": 7, "nom": "Traoré", "prenom": "Awa", "matricule": "M-7"}],
    )
    classe = db.load_classe(4)
    assert classe == {
        "id": 4,
        "nom": "10ème A",
        "niveau": "lycee",
        "matieres": [{"id": 1, "nom": "French", "coefficient": 2}],
        "eleves": [{"id": 7, "nom": "Traoré", "prenom": "Awa", "matricule": "M-7"}],
    }
    assert "%s" in cursor.queries[0][0]
    assert cursor.queries[0][1] == (4,)


def test_load_classe_not_found(fake_store):
    fake_store([])
    assert db.load_classe(99) is None


def test_load_bulletin_attaches_cycle_grades(fake_store):
    fake_store(
        [{"id": 101, "eleve_id": 1, "classe_id": 4, "annee_scolaire": "2024-2025", "moyenne_annuelle": None}],
        [],
        [{"id": 10, "bulletin_id": 101, "position": 1, "libelle": "1er trimestre", "rank": 3, "moyenne": 12.5}],
        [
            {"id": 1, "cycle_id": 10, "matiere_id": 1, "type": "classe", "note": 14, "date": datetime.date(2024, 11, 5)},
            {"id": 2, "cycle_id": 10, "matiere_id": 1, "type": "composition", "note": 30, "date": None},
        ],
    )
    bulletin = db.load_bulletin(1, 4)
    assert bulletin["eleve_id"] == 1
    assert "mois" not in bulletin
    cycle = bulletin["cycles"][0]
    assert cycle["rank"] == 3
    assert cycle["moyenne"] == 12.5
    assert cycle["gradeH"][0] == {
        "id": 1,
        "matiere": {"id": 1},
        "type": "classe",
        "note": 14,
        "date": "2024-11-05",
    }
    assert cycle["gradeH"][1]["date"] == ""


def test_load_bulletin_attaches_month_grades(fake_store):
    fake_store(
        [{"id": 7, "eleve_id": "p1", "classe_id": 2, "annee_scolaire": None, "moyenne_annuelle": None}],
        [{"id": 70, "bulletin_id": 7, "libelle": "Oct.", "rank": None, "moyenne": None}],
        [{"id": 1, "mois_id": 70, "matiere_id": 3, "note": 18, "date": "2024-10-20"}],
        [],
    )
    bulletin = db.load_bulletin("p1", 2)
    assert bulletin["annee_scolaire"] == ""
    assert bulletin["mois"][0]["gradeP"] == [
        {"id": 1, "matiere": {"id": 3}, "note": 18, "date": "2024-10-20"},
    ]
    assert "cycles" not in bulletin


def test_load_bulletin_not_found(fake_store):
    fake_store([])
    assert db.load_bulletin(1, 4) is None


def test_load_class_bulletins_groups_periods_by_bulletin(fake_store):
    fake_store(
        [
            {"id": 101, "eleve_id": 1, "classe_id": 4, "annee_scolaire": "", "moyenne_annuelle": None},
            {"id": 102, "eleve_id": 2, "classe_id": 4, "annee_scolaire": "", "moyenne_annuelle": None},
        ],
        [],
        [
            {"id": 10, "bulletin_id": 101, "position": 1, "libelle": "T1", "rank": None, "moyenne": None},
            {"id": 20, "bulletin_id": 102, "position": 1, "libelle": "T1", "rank": None, "moyenne": None},
        ],
        [{"id": 5, "cycle_id": 20, "matiere_id": 1, "type": "classe", "note": 9, "date": ""}],
    )
    bulletins = db.load_class_bulletins(4)
    assert [b["id"] for b in bulletins] == [101, 102]
    assert bulletins[0]["cycles"][0]["gradeH"] == []
    assert bulletins[1]["cycles"][0]["gradeH"][0]["note"] == 9


def test_load_class_bulletins_empty_class(fake_store):
    cursor = fake_store([])
    assert db.load_class_bulletins(4) == []
    assert len(cursor.queries) == 1


def test_load_ranking_snapshot_groups_by_cycle_position(fake_store):
    fake_store([
        {"eleve_id": 2, "cycle_id": 10, "value": 14, "rank": 1, "position": 1},
        {"eleve_id": 1, "cycle_id": 11, "value": None, "rank": None, "position": 2},
        {"eleve_id": 1, "cycle_id": 10, "value": 12.5, "rank": 2, "position": 1},
    ])
    snapshot = db.load_ranking_snapshot(4)
    assert [g["cycle_position"] for g in snapshot["cycles"]] == [1, 2]
    assert snapshot["cycles"][0]["entries"] == [
        {"eleve_id": 2, "cycle_id": 10, "value": 14.0, "rank": 1},
        {"eleve_id": 1, "cycle_id": 10, "value": 12.5, "rank": 2},
    ]
    assert snapshot["cycles"][1]["entries"][0]["value"] is None
