import logging
from typing import List

from django.conf import settings
from django.utils.module_loading import import_string

from .models import Operation

logger = logging.getLogger(__name__)


def invoke_operation(operation_id: int, machine_ids: List[int], should_run_now: bool) -> None:
    operation = Operation.objects.filter(pk=operation_id).first()
    if operation is None:
        logger.warning("Operation %s not found; nothing to invoke", operation_id)
        return
    executor_path = getattr(settings, "FLEETPLAN_DIRECTIVE_EXECUTOR", "")
    if not executor_path:
        logger.info(
            "No directive executor configured; operation %s (%s) left for pickup",
            operation_id,
            operation.state,
            extra={"machine_count": len(machine_ids), "should_run_now": should_run_now},
        )
        return
    executor = import_string(executor_path)
    executor(operation, machine_ids, should_run_now)
