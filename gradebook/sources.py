"""
Data access for the report engine.

The aggregator only talks to a ReportDataSource. DjangoReportDataSource
backs it with the ORM; tests and other callers may plug in their own.
"""
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from .exceptions import NotFoundError, ScoreValidationError
from .grading import ASSESSMENT_NUMBERS, ClassTier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StudentRecord:
    id: Any
    name: str
    class_id: Any
    admission_number: str = ''

    @classmethod
    def from_model(cls, student):
        return cls(
            id=student.pk,
            name=student.full_name,
            class_id=student.current_class_id,
            admission_number=student.admission_number,
        )

    @classmethod
    def coerce(cls, value):
        """Accept a StudentRecord or a Student model instance."""
        from students.models import Student

        if isinstance(value, cls):
            return value
        if isinstance(value, Student):
            return cls.from_model(value)
        raise TypeError(f'Expected StudentRecord or Student, got {type(value).__name__}')


@dataclass(frozen=True)
class SubjectRecord:
    id: Any
    name: str
    coefficient: int = 1
    code: str = ''


@dataclass(frozen=True)
class ClassRecord:
    id: Any
    name: str
    tier: ClassTier


@dataclass(frozen=True)
class AssessmentRecord:
    student_id: Any
    subject_id: Any
    term: int
    number: int
    score: Decimal

    @property
    def slot(self):
        """Position within the term: 0 or 1 for assessments, 0 for the exam."""
        numbers = ASSESSMENT_NUMBERS.get(self.term, ())
        if self.number not in numbers:
            raise ScoreValidationError(
                f'Assessment {self.number} does not belong to term {self.term}'
            )
        return numbers.index(self.number)


class ReportDataSource(ABC):
    """Everything the aggregator needs from storage."""

    # Namespaces shared cache keys (e.g. per academic year)
    cache_scope = 'default'

    @abstractmethod
    def list_assessments(self, student_id, term) -> List[AssessmentRecord]:
        ...

    def list_assessments_bulk(self, student_ids: Iterable, term) -> Dict[Any, List[AssessmentRecord]]:
        """Assessments for many students; override with a single query where possible."""
        return {
            student_id: self.list_assessments(student_id, term)
            for student_id in student_ids
        }

    @abstractmethod
    def list_students(self, class_id) -> List[StudentRecord]:
        ...

    @abstractmethod
    def get_student(self, student_id) -> StudentRecord:
        ...

    @abstractmethod
    def get_subject(self, subject_id) -> SubjectRecord:
        ...

    @abstractmethod
    def get_class(self, class_id) -> ClassRecord:
        ...


class DjangoReportDataSource(ReportDataSource):
    """ORM-backed data source scoped to one academic year."""

    def __init__(self, academic_year=None):
        from core.models import AcademicYear

        if academic_year is not None and not isinstance(academic_year, AcademicYear):
            try:
                academic_year = AcademicYear.objects.get(pk=academic_year)
            except (AcademicYear.DoesNotExist, ValueError, TypeError):
                raise NotFoundError('Academic year', academic_year)
        if academic_year is None:
            academic_year = AcademicYear.get_current()

        self.academic_year: Optional[AcademicYear] = academic_year
        self.cache_scope = f'ay{academic_year.pk}' if academic_year else 'all'

    def _assessments(self, term):
        from .models import Assessment

        queryset = Assessment.objects.filter(term=term)
        if self.academic_year is not None:
            queryset = queryset.filter(academic_year=self.academic_year)
        return queryset.values_list('student_id', 'subject_id', 'term', 'number', 'score')

    @staticmethod
    def _to_record(row):
        student_id, subject_id, term, number, score = row
        return AssessmentRecord(
            student_id=student_id,
            subject_id=subject_id,
            term=term,
            number=number,
            score=score,
        )

    def list_assessments(self, student_id, term):
        rows = self._assessments(term).filter(student_id=student_id).order_by('subject_id', 'number')
        return [self._to_record(row) for row in rows]

    def list_assessments_bulk(self, student_ids, term):
        student_ids = list(student_ids)
        grouped = defaultdict(list)
        rows = self._assessments(term).filter(
            student_id__in=student_ids
        ).order_by('student_id', 'subject_id', 'number')
        for row in rows:
            grouped[row[0]].append(self._to_record(row))

        logger.debug(
            f'Loaded {sum(len(v) for v in grouped.values())} term {term} assessments '
            f'for {len(student_ids)} students'
        )
        return {student_id: grouped.get(student_id, []) for student_id in student_ids}

    def list_students(self, class_id):
        from students.models import Student

        students = Student.objects.filter(
            current_class_id=class_id,
            is_active=True
        ).order_by('last_name', 'first_name', 'pk')
        return [StudentRecord.from_model(s) for s in students]

    def get_student(self, student_id):
        from students.models import Student

        try:
            return StudentRecord.from_model(Student.objects.get(pk=student_id))
        except (Student.DoesNotExist, ValueError, TypeError):
            raise NotFoundError('Student', student_id)

    def get_subject(self, subject_id):
        from academics.models import Subject

        try:
            subject = Subject.objects.get(pk=subject_id)
        except (Subject.DoesNotExist, ValueError, TypeError):
            raise NotFoundError('Subject', subject_id)
        return SubjectRecord(
            id=subject.pk,
            name=subject.name,
            coefficient=subject.coefficient,
            code=subject.code,
        )

    def get_class(self, class_id):
        from academics.models import Class

        try:
            class_obj = Class.objects.get(pk=class_id)
        except (Class.DoesNotExist, ValueError, TypeError):
            raise NotFoundError('Class', class_id)
        return ClassRecord(id=class_obj.pk, name=class_obj.name, tier=class_obj.tier)
