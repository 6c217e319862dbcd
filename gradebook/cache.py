"""
Memoization for report runs.

ReportCache lives for one batch (one class report, one request) and is
dropped afterwards, so scores entered by teachers are picked up on the next
run without any invalidation.

SharedReportCache keeps rosters and assessment lists in Django's cache across
requests. It is only correct because gradebook.signals calls
invalidate_assessments() on every assessment write and invalidate_roster()
on every class membership change.
"""
import logging
import threading

from django.core.cache import cache

from . import config

logger = logging.getLogger(__name__)

ROSTER_KEY = 'gradebook:roster:{class_id}'
ASSESSMENTS_KEY = 'gradebook:assessments:{scope}:{student_id}:{term}'


def scopes_for_year(academic_year_id):
    """Cache scopes that can see assessments of the given academic year."""
    scopes = ['all']
    if academic_year_id is not None:
        scopes.append(f'ay{academic_year_id}')
    return scopes


def invalidate_assessments(student_id, term, academic_year_id=None):
    """Drop cached assessment lists for (student, term)."""
    keys = [
        ASSESSMENTS_KEY.format(scope=scope, student_id=student_id, term=term)
        for scope in scopes_for_year(academic_year_id)
    ]
    cache.delete_many(keys)
    logger.debug(f"Assessment cache invalidated for student {student_id}, term {term}")


def invalidate_roster(class_id):
    """Drop the cached roster of a class."""
    if class_id is None:
        return
    cache.delete(ROSTER_KEY.format(class_id=class_id))
    logger.debug(f"Roster cache invalidated for class {class_id}")


class ReportCache:
    """Per-batch memo over a ReportDataSource. Safe to share between worker threads."""

    def __init__(self, source):
        self.source = source
        self._lock = threading.Lock()
        self._rosters = {}
        self._assessments = {}
        self._students = {}
        self._subjects = {}
        self._classes = {}

    def _memo(self, store, key, loader):
        with self._lock:
            if key in store:
                return store[key]
        value = loader()
        with self._lock:
            return store.setdefault(key, value)

    # Loaders overridden by SharedReportCache

    def _load_roster(self, class_id):
        return tuple(self.source.list_students(class_id))

    def _load_assessments(self, student_id, term):
        return tuple(self.source.list_assessments(student_id, term))

    def _load_assessments_bulk(self, student_ids, term):
        loaded = self.source.list_assessments_bulk(student_ids, term)
        return {sid: tuple(loaded.get(sid, ())) for sid in student_ids}

    # Public lookups

    def students_in_class(self, class_id):
        return self._memo(self._rosters, class_id, lambda: self._load_roster(class_id))

    def assessments(self, student_id, term):
        return self._memo(
            self._assessments, (student_id, term),
            lambda: self._load_assessments(student_id, term)
        )

    def prime_assessments(self, student_ids, term):
        """Load assessments for every listed student with one bulk call."""
        with self._lock:
            missing = [sid for sid in student_ids if (sid, term) not in self._assessments]
        if not missing:
            return

        loaded = self._load_assessments_bulk(missing, term)
        with self._lock:
            for sid in missing:
                self._assessments.setdefault((sid, term), loaded.get(sid, ()))

    def student(self, student_id):
        return self._memo(self._students, student_id, lambda: self.source.get_student(student_id))

    def subject(self, subject_id):
        return self._memo(self._subjects, subject_id, lambda: self.source.get_subject(subject_id))

    def class_record(self, class_id):
        return self._memo(self._classes, class_id, lambda: self.source.get_class(class_id))


class SharedReportCache(ReportCache):
    """ReportCache whose roster and assessment lookups go through Django's cache."""

    def __init__(self, source, timeout=None):
        super().__init__(source)
        self.timeout = timeout if timeout is not None else config.SHARED_REPORT_CACHE_TIMEOUT

    def _assessments_key(self, student_id, term):
        return ASSESSMENTS_KEY.format(scope=self.source.cache_scope, student_id=student_id, term=term)

    def _load_roster(self, class_id):
        key = ROSTER_KEY.format(class_id=class_id)
        roster = cache.get(key)
        if roster is None:
            roster = super()._load_roster(class_id)
            cache.set(key, roster, self.timeout)
        return roster

    def _load_assessments(self, student_id, term):
        key = self._assessments_key(student_id, term)
        records = cache.get(key)
        if records is None:
            records = super()._load_assessments(student_id, term)
            cache.set(key, records, self.timeout)
        return records

    def _load_assessments_bulk(self, student_ids, term):
        keys = {sid: self._assessments_key(sid, term) for sid in student_ids}
        cached = cache.get_many(list(keys.values()))

        result = {}
        missing = []
        for sid, key in keys.items():
            if key in cached:
                result[sid] = cached[key]
            else:
                missing.append(sid)

        if missing:
            loaded = super()._load_assessments_bulk(missing, term)
            cache.set_many({keys[sid]: loaded[sid] for sid in missing}, self.timeout)
            result.update(loaded)

        return result


def build_report_cache(source):
    """Batch cache for a run, shared across requests only when configured."""
    if config.SHARED_REPORT_CACHE:
        return SharedReportCache(source)
    return ReportCache(source)
