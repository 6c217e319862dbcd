"""
Celery tasks for gradebook app.
Computes class reports off the request cycle.
"""
import logging

from celery import shared_task
from celery.exceptions import SoftTimeLimitExceeded
from django.db import OperationalError

from . import config
from .aggregator import ReportAggregator
from .exceptions import NotFoundError, ReportCancelled, ScoreValidationError
from .sources import DjangoReportDataSource


logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    max_retries=config.TASK_MAX_RETRIES,
    default_retry_delay=config.TASK_RETRY_DELAY,
    soft_time_limit=config.TASK_SOFT_TIME_LIMIT,
    time_limit=config.TASK_TIME_LIMIT,
)
def generate_class_term_report(self, class_id, term, academic_year_id=None):
    """
    Compute the ranked term report for a class.

    Args:
        class_id: ID of the Class
        term: 1, 2 or 3
        academic_year_id: AcademicYear to read from (current year if None)

    Returns a dict with 'success' and either 'report' (serialized
    ClassTermReport) or 'error'. Retries on transient database errors;
    a run that hits the soft time limit is discarded.
    """
    try:
        aggregator = ReportAggregator(DjangoReportDataSource(academic_year_id))
        report = aggregator.class_term_report(class_id, term)
    except (NotFoundError, ScoreValidationError) as e:
        # Non-retryable - bad input
        message = '; '.join(e.messages) if isinstance(e, ScoreValidationError) else str(e)
        logger.error(f"Class {class_id} term {term} report failed: {message}")
        return {'success': False, 'error': message}
    except (SoftTimeLimitExceeded, ReportCancelled):
        logger.warning(f"Class {class_id} term {term} report timed out; partial run discarded")
        return {'success': False, 'error': 'Report generation timed out'}
    except OperationalError as e:
        # Transient error - retry with exponential backoff
        logger.warning(
            f"Database error on class {class_id} term {term} report "
            f"(attempt {self.request.retries + 1}): {e}"
        )
        raise self.retry(exc=e, countdown=config.TASK_RETRY_DELAY * (2 ** self.request.retries))

    logger.info(
        f"Generated term {term} report for class {report.class_name}: "
        f"{report.class_size} students, {report.total_passed} passed"
    )
    return {'success': True, 'report': report.as_dict()}
