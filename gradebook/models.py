from decimal import Decimal

from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator, MaxValueValidator
from django.db import models

from .grading import ASSESSMENT_NUMBERS
from academics.models import Subject
from core.models import AcademicYear
from students.models import Student


class Assessment(models.Model):
    """
    One recorded score (out of 20) for a student in a subject.

    Assessments are numbered across the year: term 1 holds assessments 1 and 2,
    term 2 holds 3 and 4, term 3 holds the exam (assessment 5).
    """
    ASSESSMENT_NUMBERS = ASSESSMENT_NUMBERS
    TERM_CHOICES = [
        (1, 'First Term'),
        (2, 'Second Term'),
        (3, 'Third Term'),
    ]
    NUMBER_CHOICES = [
        (1, 'Assessment 1 (Term 1)'),
        (2, 'Assessment 2 (Term 1)'),
        (3, 'Assessment 3 (Term 2)'),
        (4, 'Assessment 4 (Term 2)'),
        (5, 'Exam (Term 3)'),
    ]

    student = models.ForeignKey(
        Student,
        on_delete=models.CASCADE,
        related_name='assessments',
        db_index=True
    )
    subject = models.ForeignKey(
        Subject,
        on_delete=models.CASCADE,
        related_name='assessments',
        db_index=True
    )
    academic_year = models.ForeignKey(
        AcademicYear,
        on_delete=models.CASCADE,
        related_name='assessments',
        null=True,
        blank=True
    )
    term = models.PositiveSmallIntegerField(choices=TERM_CHOICES)
    number = models.PositiveSmallIntegerField(
        choices=NUMBER_CHOICES,
        help_text='Assessment number within the academic year'
    )
    score = models.DecimalField(
        max_digits=4,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0')), MaxValueValidator(Decimal('20'))],
        help_text='Score out of 20'
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'assessment'
        ordering = ['student', 'subject', 'number']
        verbose_name = 'Assessment'
        verbose_name_plural = 'Assessments'
        unique_together = ['student', 'subject', 'academic_year', 'number']
        indexes = [
            models.Index(fields=['student', 'term'], name='assessment_student_term_idx'),
            models.Index(fields=['academic_year', 'term'], name='assessment_year_term_idx'),
        ]

    def __str__(self):
        return f"{self.student} - {self.subject.name} #{self.number}: {self.score}/20"

    def clean(self):
        """Validate the term/number pairing."""
        allowed = self.ASSESSMENT_NUMBERS.get(self.term)
        if allowed is None:
            raise ValidationError({'term': f'Invalid term: {self.term}'})
        if self.number not in allowed:
            raise ValidationError({
                'number': f'Term {self.term} only accepts assessment(s) {", ".join(map(str, allowed))}'
            })

    @property
    def slot(self):
        """Position of this assessment within its term (0 or 1)."""
        return self.ASSESSMENT_NUMBERS[self.term].index(self.number)
