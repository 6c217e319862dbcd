"""
Report aggregation for terms and academic years.

A ReportAggregator is one batch: it owns a ReportCache and memoizes each
class standing it computes, so every report it returns for a given class and
term comes from the same roster snapshot. Create a new aggregator (or a new
cache) to see fresh data.

Work per class-term runs in three phases:
    1. bulk-load the roster and every classmate's assessments
    2. compute subject reports and the weighted average per student
       (optionally on a bounded thread pool)
    3. rank the class once every average is known
"""
import logging
import threading
import time
from collections import defaultdict
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

from django.core.exceptions import ValidationError
from django.db import connections

from . import config, grading
from .cache import build_report_cache
from .exceptions import IncompleteDataWarning, NotFoundError, ReportCancelled, ScoreValidationError
from .ranking import rank
from .reports import (
    ClassTermReport,
    ClassYearlyReport,
    SubjectReport,
    TermReport,
    YearlyReport,
    YearlySubjectReport,
)
from .sources import DjangoReportDataSource, StudentRecord

logger = logging.getLogger(__name__)

# Seconds between cancellation checks while waiting on workers
POLL_INTERVAL = 0.05


def _error_text(exc):
    if isinstance(exc, ValidationError):
        return '; '.join(exc.messages)
    return str(exc)


@dataclass
class _Standing:
    """Unranked result for one student in one term."""
    student: StudentRecord
    subject_reports: Tuple[SubjectReport, ...] = ()
    average: Any = None
    warnings: Tuple[IncompleteDataWarning, ...] = ()
    failure: Optional[Exception] = None


@dataclass
class _ClassTerm:
    class_record: Any
    term: int
    reports: List[TermReport] = field(default_factory=list)
    by_student: Dict[Any, TermReport] = field(default_factory=dict)
    failures: Dict[Any, Exception] = field(default_factory=dict)


@dataclass
class _ClassYear:
    class_record: Any
    reports: List[YearlyReport] = field(default_factory=list)
    by_student: Dict[Any, YearlyReport] = field(default_factory=dict)
    failures: Dict[Any, Exception] = field(default_factory=dict)


class ReportAggregator:
    """
    Builds term and yearly reports for students and whole classes.

    Args:
        source: ReportDataSource to read from (ORM-backed by default)
        cache: ReportCache to use; a fresh one is built when omitted
        max_workers: size of the per-student thread pool (1 runs inline)
        deadline: seconds a single public call may run before it is cancelled
    """

    def __init__(self, source=None, cache=None, max_workers=None, deadline=None):
        if source is None:
            source = cache.source if cache is not None else DjangoReportDataSource()
        self.source = source
        self.cache = cache if cache is not None else build_report_cache(source)
        self.max_workers = max(1, int(max_workers or config.REPORT_MAX_WORKERS))
        self.deadline = deadline if deadline is not None else config.REPORT_DEADLINE_SECONDS

        self._lock = threading.Lock()
        self._class_terms: Dict[Tuple[Any, int], _ClassTerm] = {}
        self._class_years: Dict[Any, _ClassYear] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def term_report(self, student_id, term) -> TermReport:
        """Report for one student, ranked against the whole class."""
        term = grading.validate_term(term)
        student = self._student(student_id)
        standing = self._class_term(student.class_id, term, None, self._deadline_at())
        return self._pick(standing, student)

    def class_term_report(self, class_id, term, cancel=None) -> ClassTermReport:
        """Every student's report for one term, in rank order."""
        term = grading.validate_term(term)
        standing = self._class_term(class_id, term, cancel, self._deadline_at())
        class_record = standing.class_record
        return ClassTermReport(
            class_id=class_record.id,
            class_name=class_record.name,
            tier=class_record.tier,
            reports=tuple(standing.reports),
            term=term,
        )

    def yearly_report(self, student_id) -> YearlyReport:
        """Rollup of terms 1-3 for one student, ranked on the yearly average."""
        student = self._student(student_id)
        standing = self._class_year(student.class_id, None, self._deadline_at())
        return self._pick(standing, student)

    def class_yearly_report(self, class_id, cancel=None) -> ClassYearlyReport:
        standing = self._class_year(class_id, cancel, self._deadline_at())
        class_record = standing.class_record
        return ClassYearlyReport(
            class_id=class_record.id,
            class_name=class_record.name,
            tier=class_record.tier,
            reports=tuple(standing.reports),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _student(self, student_id):
        student = StudentRecord.coerce(self.cache.student(student_id))
        if student.class_id is None:
            raise NotFoundError('Class', f'for student {student_id}')
        return student

    def _roster(self, class_id):
        return [StudentRecord.coerce(s) for s in self.cache.students_in_class(class_id)]

    @staticmethod
    def _pick(standing, student):
        if student.id in standing.failures:
            raise standing.failures[student.id]
        try:
            return standing.by_student[student.id]
        except KeyError:
            raise NotFoundError('Student', f'{student.id} in class {standing.class_record.name}')

    def _deadline_at(self):
        if not self.deadline:
            return None
        return time.monotonic() + float(self.deadline)

    @staticmethod
    def _check_cancelled(cancel, deadline_at):
        if cancel is not None and cancel.is_set():
            raise ReportCancelled('Report run cancelled')
        if deadline_at is not None and time.monotonic() > deadline_at:
            raise ReportCancelled('Report run exceeded its deadline')

    def _run_per_student(self, roster, compute, cancel, deadline_at):
        """Apply compute to every student, inline or on the worker pool."""
        if self.max_workers <= 1 or len(roster) < 2:
            results = []
            for student in roster:
                self._check_cancelled(cancel, deadline_at)
                results.append(compute(student))
            return results

        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='gradebook-report')
        try:
            futures = [executor.submit(self._in_worker, compute, student) for student in roster]
            pending = set(futures)
            while pending:
                self._check_cancelled(cancel, deadline_at)
                _, pending = wait(pending, timeout=POLL_INTERVAL, return_when=FIRST_COMPLETED)
            return [future.result() for future in futures]
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

    @staticmethod
    def _in_worker(compute, student):
        try:
            return compute(student)
        finally:
            # Connections are per thread; don't leak one per worker
            connections.close_all()

    # ------------------------------------------------------------------
    # Term standings
    # ------------------------------------------------------------------

    def _class_term(self, class_id, term, cancel, deadline_at) -> _ClassTerm:
        key = (class_id, term)
        with self._lock:
            if key in self._class_terms:
                return self._class_terms[key]

        self._check_cancelled(cancel, deadline_at)

        # ========== PHASE 1: Bulk load ==========
        class_record = self.cache.class_record(class_id)
        roster = self._roster(class_id)
        student_ids = [s.id for s in roster]
        self.cache.prime_assessments(student_ids, term)
        records = {sid: self.cache.assessments(sid, term) for sid in student_ids}

        subjects, broken = self._resolve_subjects(records)

        # ========== PHASE 2: Per-student averages ==========
        def compute(student):
            return self._student_term(student, term, class_record.tier, subjects, broken, records[student.id])

        standings = self._run_per_student(roster, compute, cancel, deadline_at)
        self._check_cancelled(cancel, deadline_at)

        # ========== PHASE 3: Rank ==========
        result = _ClassTerm(class_record=class_record, term=term)
        by_id = {s.student.id: s for s in standings}
        for entry in rank((s.student.id, s.average) for s in standings):
            standing = by_id[entry.id]
            report = TermReport(
                student_id=standing.student.id,
                student_name=standing.student.name,
                admission_number=standing.student.admission_number,
                class_id=class_record.id,
                class_name=class_record.name,
                tier=class_record.tier,
                term=term,
                subject_reports=standing.subject_reports,
                average=standing.average,
                rank=entry.rank,
                class_size=len(roster),
                warnings=standing.warnings,
                error=_error_text(standing.failure) if standing.failure else '',
            )
            result.reports.append(report)
            result.by_student[report.student_id] = report
            if standing.failure is not None:
                result.failures[report.student_id] = standing.failure

        logger.info(
            f'Computed term {term} reports for {len(roster)} students in {class_record.name} '
            f'({len(subjects)} subjects, {len(result.failures)} failed)'
        )

        with self._lock:
            return self._class_terms.setdefault(key, result)

    def _resolve_subjects(self, records):
        """Subjects with a recorded assessment on the roster, plus the ones that failed to load."""
        subject_ids = {r.subject_id for rows in records.values() for r in rows}
        subjects = {}
        broken = {}
        for subject_id in subject_ids:
            try:
                subject = self.cache.subject(subject_id)
                grading.validate_coefficient(subject.coefficient)
            except (NotFoundError, ScoreValidationError) as exc:
                logger.warning(f'Skipping subject {subject_id}: {_error_text(exc)}')
                broken[subject_id] = exc
            else:
                subjects[subject_id] = subject
        return subjects, broken

    def _student_term(self, student, term, tier, subjects, broken, records) -> _Standing:
        try:
            return self._build_standing(student, term, tier, subjects, broken, records)
        except (ScoreValidationError, NotFoundError) as exc:
            logger.warning(
                f'Could not compute term {term} report for student {student.id} '
                f'({student.name}): {_error_text(exc)}'
            )
            return _Standing(student=student, failure=exc)

    @staticmethod
    def _build_standing(student, term, tier, subjects, broken, records) -> _Standing:
        if not records:
            # No data for this student, whatever classmates sat
            return _Standing(student=student, warnings=(IncompleteDataWarning(
                f'No assessment recorded for {student.name} in term {term}', term=term
            ),))

        size = grading.COMPONENTS_PER_TERM[term]
        # Only subjects this student has a recorded assessment in
        components = {}

        for record in records:
            if record.subject_id in broken:
                raise broken[record.subject_id]
            if record.term != term:
                raise ScoreValidationError(
                    f'Assessment {record.number} belongs to term {record.term}, not term {term}'
                )
            slots = components.setdefault(record.subject_id, [None] * size)
            slot = record.slot
            if slots[slot] is not None:
                raise ScoreValidationError(
                    f'Duplicate assessment {record.number} for subject {record.subject_id}'
                )
            slots[slot] = grading.validate_score(record.score)

        subject_reports = tuple(sorted(
            (
                SubjectReport(
                    subject_id=subject_id,
                    subject_name=subjects[subject_id].name,
                    coefficient=subjects[subject_id].coefficient,
                    term=term,
                    tier=tier,
                    components=tuple(slots),
                )
                for subject_id, slots in components.items()
            ),
            key=lambda sr: (sr.subject_name, str(sr.subject_id)),
        ))

        return _Standing(
            student=student,
            subject_reports=subject_reports,
            average=grading.weighted_term_average(subject_reports),
        )

    # ------------------------------------------------------------------
    # Yearly standings
    # ------------------------------------------------------------------

    def _class_year(self, class_id, cancel, deadline_at) -> _ClassYear:
        with self._lock:
            if class_id in self._class_years:
                return self._class_years[class_id]

        terms = {}
        for term in grading.TERMS:
            self._check_cancelled(cancel, deadline_at)
            terms[term] = self._class_term(class_id, term, cancel, deadline_at)

        class_record = terms[grading.TERMS[0]].class_record
        roster = self._roster(class_id)
        result = _ClassYear(class_record=class_record)

        unranked = []
        for student in roster:
            per_term = [terms[t].by_student.get(student.id) for t in grading.TERMS]
            present = tuple(tr for tr in per_term if tr is not None and tr.has_data)
            missing = tuple(t for t, tr in zip(grading.TERMS, per_term) if tr is None or not tr.has_data)

            warnings = []
            for tr in present:
                warnings.extend(tr.warnings)
            for t in missing:
                warnings.append(IncompleteDataWarning(f'No data for term {t}', term=t))

            failures = [terms[t].failures[student.id] for t in grading.TERMS if student.id in terms[t].failures]
            if failures:
                result.failures[student.id] = failures[0]

            unranked.append(YearlyReport(
                student_id=student.id,
                student_name=student.name,
                admission_number=student.admission_number,
                class_id=class_record.id,
                class_name=class_record.name,
                tier=class_record.tier,
                term_reports=present,
                subject_reports=self._subject_rollups(present, class_record.tier),
                rank=0,
                class_size=len(roster),
                missing_terms=missing,
                warnings=tuple(warnings),
                error='; '.join(_error_text(exc) for exc in failures),
            ))

        by_id = {r.student_id: r for r in unranked}
        for entry in rank((r.student_id, r.yearly_average) for r in unranked):
            report = replace(by_id[entry.id], rank=entry.rank)
            result.reports.append(report)
            result.by_student[report.student_id] = report

        logger.info(f'Computed yearly reports for {len(roster)} students in {class_record.name}')

        with self._lock:
            return self._class_years.setdefault(class_id, result)

    @staticmethod
    def _subject_rollups(term_reports, tier):
        """Per-subject yearly rollup keyed by subject name."""
        averages = defaultdict(dict)
        coefficients = {}
        for tr in term_reports:
            for sr in tr.subject_reports:
                averages[sr.subject_name][tr.term] = sr.average
                coefficients.setdefault(sr.subject_name, sr.coefficient)

        return tuple(
            YearlySubjectReport(
                subject_name=name,
                coefficient=coefficients[name],
                tier=tier,
                term1_average=averages[name].get(1),
                term2_average=averages[name].get(2),
                term3_average=averages[name].get(3),
            )
            for name in sorted(averages)
        )
