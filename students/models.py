from django.db import models
from django.utils import timezone


class Student(models.Model):
    """
    Represents a student enrolled in the school.
    """
    first_name = models.CharField(max_length=100)
    last_name = models.CharField(max_length=100)
    other_names = models.CharField(max_length=100, blank=True)

    # Admission Details
    admission_number = models.CharField(
        max_length=50,
        unique=True,
        blank=True,
        help_text="Unique student ID/admission number, allocated when left blank"
    )

    # Enrollment
    current_class = models.ForeignKey(
        'academics.Class',
        on_delete=models.PROTECT,
        related_name='students',
        null=True,
        blank=True
    )

    # Metadata
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['last_name', 'first_name']
        verbose_name = "Student"
        verbose_name_plural = "Students"

    def __str__(self):
        return f"{self.full_name} ({self.admission_number})"

    def save(self, *args, **kwargs):
        if not self.admission_number:
            from core.models import Sequence
            year = timezone.now().year
            self.admission_number = f"STU{year}{Sequence.next_value('student'):04d}"
        super().save(*args, **kwargs)

    @property
    def full_name(self):
        """Return full name of student."""
        names = [self.first_name]
        if self.other_names:
            names.append(self.other_names)
        names.append(self.last_name)
        return ' '.join(names)
