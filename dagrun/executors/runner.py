"""
Run one task attempt and classify its outcome.

This is the executor boundary: every exception raised by operator code is
caught here and turned into a PollResult, so a failing task can never take
down the scheduler.
"""

import logging
import threading

from dagrun.errors import Cancelled, PermanentError, RescheduleRequested, TaskSkipped
from dagrun.executors.base import PollResult, PollStatus, TaskRequest
from dagrun.operators.registry import OperatorRegistry

logger = logging.getLogger(__name__)


def _error_info(e: BaseException) -> dict[str, str]:
    return {
        "type": type(e).__name__,
        "message": str(e),
    }


def run_task(
    request: TaskRequest,
    registry: OperatorRegistry,
    cancel_event: threading.Event,
) -> PollResult:
    """
    Execute a task request with the operator registered for it.

    Args:
        request: The attempt to run
        registry: Operator registry used to build the operator
        cancel_event: Set by the backend when cancellation is requested

    Returns:
        PollResult with a final status
    """
    if cancel_event.is_set():
        return PollResult(PollStatus.CANCELLED)

    try:
        operator = registry.create(request.operator, request.task_key, request.params, request.mode)
    except KeyError as e:
        logger.error(f"Task '{request.task_key}': {e}",
                     extra={"run_id": request.run_id, "task_key": request.task_key})
        return PollResult(PollStatus.FAILED, error=_error_info(e), retryable=False)

    log_extra = {
        "graph_id": request.graph_id,
        "run_id": request.run_id,
        "task_key": request.task_key,
    }
    logger.debug(f"Running {request.task_key} (try {request.try_number})", extra=log_extra)

    try:
        result = operator.execute(request.context(cancel_event))
    except RescheduleRequested as e:
        return PollResult(PollStatus.RESCHEDULE, reschedule_delay=e.delay)
    except TaskSkipped as e:
        return PollResult(PollStatus.SKIPPED, error=_error_info(e))
    except Cancelled as e:
        return PollResult(PollStatus.CANCELLED, error=_error_info(e))
    except PermanentError as e:
        logger.warning(f"Task '{request.task_key}' failed permanently: {e}", extra=log_extra)
        return PollResult(PollStatus.FAILED, error=_error_info(e), retryable=False)
    except Exception as e:
        logger.warning(f"Task '{request.task_key}' failed: {e}", extra=log_extra)
        return PollResult(PollStatus.FAILED, error=_error_info(e), retryable=True)

    return PollResult(PollStatus.SUCCESS, result=result)
