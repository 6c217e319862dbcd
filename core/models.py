from django.db import models, transaction
from django.db.models import F


class AcademicYear(models.Model):
    """
    Represents an academic year (e.g., 2024/2025).
    Assessments are recorded against one academic year.
    """
    name = models.CharField(
        max_length=50,
        help_text="e.g., 2024/2025 Academic Year"
    )
    start_date = models.DateField()
    end_date = models.DateField()
    is_current = models.BooleanField(
        default=False,
        help_text="Only one academic year can be current at a time"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-start_date']
        verbose_name = "Academic Year"
        verbose_name_plural = "Academic Years"

    def __str__(self):
        return self.name

    def save(self, *args, **kwargs):
        # Ensure only one academic year is current
        if self.is_current:
            AcademicYear.objects.filter(is_current=True).exclude(pk=self.pk).update(is_current=False)
        super().save(*args, **kwargs)

    @classmethod
    def get_current(cls):
        """Get the current academic year."""
        return cls.objects.filter(is_current=True).first()


class Sequence(models.Model):
    """
    Named counter used to allocate codes (admission numbers, subject codes).

    Values come from a locked database row, so several application processes
    can allocate from the same sequence without handing out duplicates.
    """
    name = models.CharField(max_length=50, unique=True)
    last_value = models.PositiveIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Sequence"
        verbose_name_plural = "Sequences"

    def __str__(self):
        return f"{self.name}: {self.last_value}"

    @classmethod
    def next_value(cls, name):
        """Allocate and return the next value of the named sequence."""
        with transaction.atomic():
            cls.objects.get_or_create(name=name)
            sequence = cls.objects.select_for_update().get(name=name)
            sequence.last_value = F('last_value') + 1
            sequence.save(update_fields=['last_value', 'updated_at'])
            sequence.refresh_from_db(fields=['last_value'])
            return sequence.last_value
