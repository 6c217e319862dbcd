import logging

from django.contrib.auth.decorators import login_required, user_passes_test
from django.http import JsonResponse
from django.shortcuts import get_object_or_404
from django.views.decorators.http import require_GET
from django_ratelimit.decorators import ratelimit

from academics.models import Class

from . import config, grading
from .aggregator import ReportAggregator
from .exceptions import NotFoundError, ReportCancelled, ScoreValidationError
from .sources import DjangoReportDataSource

logger = logging.getLogger(__name__)

TEACHERS_GROUP = 'Teachers'


def is_teacher_or_admin(user):
    """Check if user is a teacher, staff member, or superuser."""
    return (user.is_superuser or
            user.is_staff or
            user.groups.filter(name=TEACHERS_GROUP).exists())


def teacher_or_admin_required(view_func):
    """Decorator to require teacher, staff, or superuser."""
    return user_passes_test(is_teacher_or_admin, login_url='/')(view_func)


def report_rate(group, request):
    return config.REPORT_RATE_LIMIT


def _error(message, status):
    return JsonResponse({'error': message}, status=status)


def _aggregator(request):
    """Aggregator scoped to ?academic_year=<id>, or the current year."""
    return ReportAggregator(DjangoReportDataSource(request.GET.get('academic_year') or None))


def _report_response(build):
    """Run a report builder and translate engine errors to JSON responses."""
    try:
        return JsonResponse(build().as_dict())
    except NotFoundError as e:
        return _error(str(e), 404)
    except ScoreValidationError as e:
        return _error('; '.join(e.messages), 400)
    except ReportCancelled as e:
        logger.warning(f'Report request cancelled: {e}')
        return _error(str(e), 503)


# ============ Reports ============

@require_GET
@login_required
@teacher_or_admin_required
@ratelimit(key='user', rate=report_rate, block=True)
def student_term_report(request, student_id, term):
    """Term report card data for one student."""
    return _report_response(lambda: _aggregator(request).term_report(student_id, term))


@require_GET
@login_required
@teacher_or_admin_required
@ratelimit(key='user', rate=report_rate, block=True)
def class_term_report(request, class_id, term):
    """Ranked term reports for a whole class."""
    return _report_response(lambda: _aggregator(request).class_term_report(class_id, term))


@require_GET
@login_required
@teacher_or_admin_required
@ratelimit(key='user', rate=report_rate, block=True)
def student_yearly_report(request, student_id):
    return _report_response(lambda: _aggregator(request).yearly_report(student_id))


@require_GET
@login_required
@teacher_or_admin_required
@ratelimit(key='user', rate=report_rate, block=True)
def class_yearly_report(request, class_id):
    return _report_response(lambda: _aggregator(request).class_yearly_report(class_id))


# ============ Live Score Entry ============

@require_GET
@login_required
@teacher_or_admin_required
@ratelimit(key='user', rate='600/h', block=True)
def grade_preview(request):
    """
    Provisional subject average and grade while scores are being typed.

    Query params: term, class, and one ``score`` per component (two for
    terms 1-2, one for term 3). Blank or missing scores count as absent.
    """
    class_id = request.GET.get('class', '')
    if not class_id.isdigit():
        return _error('A valid class is required', 400)
    class_obj = get_object_or_404(Class, pk=class_id)

    try:
        term = grading.validate_term(request.GET.get('term'))
        size = grading.COMPONENTS_PER_TERM[term]
        scores = [s or None for s in request.GET.getlist('score')]
        if len(scores) > size:
            raise ScoreValidationError(f'Term {term} takes at most {size} score(s)')
        scores += [None] * (size - len(scores))
        average = grading.subject_average(term, scores)
    except ScoreValidationError as e:
        return _error('; '.join(e.messages), 400)

    grade = grading.letter_grade(average, class_obj.tier)
    return JsonResponse({
        'term': term,
        'tier': class_obj.tier.value,
        'average': float(average),
        'letter_grade': grade,
        'passed': grading.is_passing(grade, class_obj.tier),
        'remarks': grading.remarks(average),
    })
