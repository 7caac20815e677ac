"""Class ranking by period average."""

import logging

from grading import round2

TIE_EPSILON = 0.01


def _average_value(value):
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def rank_students(entries):
    """Rank every student of a class for one period position.

    entries: [{'student_id', 'average'}] for all students of the class,
    students without grades included with an average of 0 (or None).
    Returns {student_id: rank}; rank 0 means "not ranked", which is what
    everybody gets when nobody in the class has a positive average.

    Tied students share the rank of the first position of their tie run: a
    student takes the position of the earliest directly preceding student
    whose average is within TIE_EPSILON of its own, so [20, 20, 18] ranks
    as [1, 1, 3].
    """
    scored = []
    for entry in entries or []:
        student_id = entry.get('student_id')
        if student_id is None:
            continue
        scored.append((str(student_id), _average_value(entry.get('average'))))

    if not any(score > 0 for _sid, score in scored):
        return {sid: 0 for sid, _score in scored}

    scored.sort(key=lambda item: item[1], reverse=True)
    ranks = {}
    for index, (sid, score) in enumerate(scored):
        rank = index + 1
        for back in range(index - 1, -1, -1):
            if abs(scored[back][1] - score) < TIE_EPSILON:
                rank = back + 1
            else:
                break
        ranks[sid] = rank
    return ranks


def rank_class_periods(class_averages, period_count):
    """Ranks for every period position of a class.

    class_averages: {student_id: [average per period position]}.
    Returns {student_id: [rank per period position]}.
    """
    ranks = {str(sid): [0] * period_count for sid in class_averages}
    for position in range(period_count):
        entries = []
        for sid, averages in class_averages.items():
            averages = averages or []
            average = averages[position] if position < len(averages) else None
            entries.append({'student_id': sid, 'average': average})
        for sid, rank in rank_students(entries).items():
            ranks[sid][position] = rank
    return ranks


def _snapshot_groups(snapshot):
    """Yield (0-based position, entries) from a server ranking snapshot."""
    if not snapshot:
        return
    if isinstance(snapshot, dict) and isinstance(snapshot.get('cycles'), list):
        for group in snapshot['cycles']:
            if not isinstance(group, dict):
                continue
            try:
                position = int(group.get('cycle_position', group.get('position'))) - 1
            except (TypeError, ValueError):
                logging.warning("Ignoring ranking snapshot group without a position: %r", group)
                continue
            yield position, group.get('entries') or []
        return
    if isinstance(snapshot, dict):
        # {position: [{'student_id', 'rank'}]} with 0-based positions
        for key, entries in snapshot.items():
            try:
                position = int(key)
            except (TypeError, ValueError):
                continue
            yield position, entries or []


def ranks_from_snapshot(snapshot, student_id, period_count):
    """Server-computed ranks of one student, 0 where the snapshot has none."""
    ranks = [0] * period_count
    target = str(student_id)
    for position, entries in _snapshot_groups(snapshot):
        if position < 0 or position >= period_count:
            continue
        if not isinstance(entries, list):
            logging.warning("Ignoring ranking snapshot entries that are not a list: %r", entries)
            continue
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            sid = entry.get('eleve_id', entry.get('student_id'))
            if str(sid) != target:
                continue
            try:
                ranks[position] = int(entry.get('rank') or 0)
            except (TypeError, ValueError):
                ranks[position] = 0
            break
    return ranks


def compute_class_statistics(averages):
    """Highest, lowest and mean of the positive averages of one period."""
    values = [float(a) for a in averages if a is not None and float(a) > 0]
    if not values:
        return {'highest': None, 'lowest': None, 'class_average': None, 'graded_count': 0}
    return {
        'highest': round2(max(values)),
        'lowest': round2(min(values)),
        'class_average': round2(sum(values) / len(values)),
        'graded_count': len(values),
    }
