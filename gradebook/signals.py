"""
Signals keeping the shared report cache honest.

Every assessment write drops the cached assessment list for the affected
(student, term), and every change to class membership drops the cached
roster of the old and new class.
"""
import logging
import threading

from django.db.models.signals import post_delete, post_save, pre_save
from django.dispatch import receiver

from students.models import Student

from .cache import invalidate_assessments, invalidate_roster
from .models import Assessment

logger = logging.getLogger(__name__)

# Thread-local storage for signal disabling (thread-safe)
_thread_locals = threading.local()


def _is_signals_disabled():
    """Check if signals are disabled for the current thread."""
    return getattr(_thread_locals, 'signals_disabled', False)


class signals_disabled:
    """
    Context manager to temporarily disable cache invalidation.

    Bulk loaders use it and invalidate once afterwards:
        with signals_disabled():
            Assessment.objects.bulk_create(...)
    """
    def __enter__(self):
        self._previous_state = _is_signals_disabled()
        _thread_locals.signals_disabled = True
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        _thread_locals.signals_disabled = self._previous_state
        return False


@receiver(post_save, sender=Assessment)
@receiver(post_delete, sender=Assessment)
def assessment_changed(sender, instance, **kwargs):
    """Invalidate cached assessments when a score is saved or deleted."""
    if _is_signals_disabled():
        return
    invalidate_assessments(instance.student_id, instance.term, instance.academic_year_id)


@receiver(pre_save, sender=Student)
def remember_previous_class(sender, instance, **kwargs):
    """Stash the stored class so post_save can invalidate both rosters."""
    if instance.pk is None:
        instance._previous_class_id = None
        return
    instance._previous_class_id = (
        Student.objects.filter(pk=instance.pk).values_list('current_class_id', flat=True).first()
    )


@receiver(post_save, sender=Student)
def student_saved(sender, instance, created, **kwargs):
    """Invalidate rosters when a student joins, leaves or changes class."""
    if _is_signals_disabled():
        return
    previous = getattr(instance, '_previous_class_id', None)
    invalidate_roster(instance.current_class_id)
    if previous != instance.current_class_id:
        invalidate_roster(previous)


@receiver(post_delete, sender=Student)
def student_deleted(sender, instance, **kwargs):
    if _is_signals_disabled():
        return
    invalidate_roster(instance.current_class_id)
