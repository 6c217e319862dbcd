from django.core.validators import MinValueValidator
from django.db import models
from django.utils.translation import gettext_lazy as _

from gradebook.grading import ClassTier


class Class(models.Model):
    """
    Represents a class/classroom grouping of students.

    For Forms 1-5 (ordinary level):
        - Name format: F1-A, F3-B

    For Sixth Form (advanced level):
        - Name format: LSX-A, USX-B
    """
    class LevelType(models.TextChoices):
        FORM = 'form', _('Form')
        LOWER_SIXTH = 'lower_sixth', _('Lower Sixth')
        UPPER_SIXTH = 'upper_sixth', _('Upper Sixth')

    # Level info
    level_type = models.CharField(
        max_length=20,
        choices=LevelType.choices,
        default=LevelType.FORM
    )
    level_number = models.PositiveSmallIntegerField(
        default=1,
        help_text="1-5 for Forms, 1 for Sixth Form"
    )
    section = models.CharField(
        max_length=5,
        help_text="A, B, C, etc."
    )

    # Auto-generated class name
    name = models.CharField(
        max_length=20,
        editable=False,
        help_text="Auto-generated: F1-A, LSX-B"
    )

    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['level_type', 'level_number', 'section']
        verbose_name = "Class"
        verbose_name_plural = "Classes"
        unique_together = ['level_type', 'level_number', 'section']

    def __str__(self):
        return self.name

    def save(self, *args, **kwargs):
        self.name = self.generate_name()
        super().save(*args, **kwargs)

    def generate_name(self):
        """Generate class name based on level type."""
        if self.level_type == self.LevelType.LOWER_SIXTH:
            return f"LSX-{self.section}"
        elif self.level_type == self.LevelType.UPPER_SIXTH:
            return f"USX-{self.section}"
        return f"F{self.level_number}-{self.section}"

    @property
    def tier(self):
        """Sixth form classes are graded on the advanced scale."""
        if self.level_type == self.LevelType.FORM:
            return ClassTier.ORDINARY
        return ClassTier.ADVANCED


class Subject(models.Model):
    """A taught subject and its weight in the term average."""
    name = models.CharField(max_length=100, unique=True)
    code = models.CharField(
        max_length=20,
        unique=True,
        blank=True,
        help_text="Allocated automatically when left blank"
    )
    coefficient = models.PositiveSmallIntegerField(
        default=1,
        validators=[MinValueValidator(1)],
        help_text="Weight of this subject in the term average"
    )
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['name']
        verbose_name = "Subject"
        verbose_name_plural = "Subjects"

    def __str__(self):
        return self.name

    def save(self, *args, **kwargs):
        if not self.code:
            from core.models import Sequence
            prefix = ''.join(ch for ch in self.name.upper() if ch.isalpha())[:3] or 'SUB'
            self.code = f"{prefix}{Sequence.next_value('subject'):03d}"
        super().save(*args, **kwargs)
