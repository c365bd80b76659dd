import json
import logging
from typing import Any, Dict, List, Optional

from django.contrib.auth.decorators import login_required
from django.core.exceptions import ValidationError
from django.db.models import QuerySet
from django.http import HttpRequest, JsonResponse
from django.shortcuts import get_object_or_404
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from .admission import GroupScheduler, HoldMode, OperationAdmitter
from .errors import AdmissionError, NoPermittedMachines, QuotaExceeded
from .models import Directive, Operation, OperationTemplate

logger = logging.getLogger(__name__)


def _parse_json(request: HttpRequest) -> Dict[str, Any]:
    if request.body:
        try:
            return json.loads(request.body.decode("utf-8"))
        except json.JSONDecodeError:
            return {}
    return {}


def _parse_hold(value: Any) -> Optional[bool]:
    if value is None or isinstance(value, bool):
        return value
    raise ValidationError("hold must be true, false or null")


def _operations_for(user) -> QuerySet:
    if user.is_superuser:
        return Operation.objects.all()
    return Operation.objects.filter(operator=user)


def _directive_to_payload(directive: Directive) -> Dict[str, Any]:
    return {
        "id": directive.id,
        "machine_id": directive.machine_id,
        "directive_template_id": directive.directive_template_id,
        "step_index": directive.step_index,
        "pluggable": directive.pluggable,
        "ignorable_on_failure": directive.ignorable_on_failure,
        "state": directive.state,
        "pre_id": directive.pre_id,
        "next_id": directive.next_id,
    }


def _operation_to_payload(operation: Operation, include_directives: bool = False) -> Dict[str, Any]:
    payload = {
        "id": operation.id,
        "name": operation.name,
        "app_id": operation.app_id,
        "operation_template_id": operation.operation_template_id,
        "operator": operation.operator.get_username() if operation.operator_id else None,
        "state": operation.state,
        "previous_id": operation.previous_id,
        "job_id": operation.job_id,
        "machine_ids": list(operation.machine_operations.order_by("id").values_list("machine_id", flat=True)),
        "events": operation.available_events(),
        "created_at": operation.created_at.isoformat() if operation.created_at else "",
    }
    if include_directives:
        payload["directives"] = [_directive_to_payload(directive) for directive in operation.directives.all()]
    return payload


def _admission_error_response(exc: AdmissionError) -> JsonResponse:
    if isinstance(exc, NoPermittedMachines):
        return JsonResponse({"error": exc.reason}, status=403)
    if isinstance(exc, QuotaExceeded):
        return JsonResponse(
            {"error": exc.reason, "environment_id": exc.environment_id, "limit": exc.limit, "count": exc.count},
            status=409,
        )
    return JsonResponse({"error": exc.reason}, status=400)


@csrf_exempt
@login_required
@require_http_methods(["POST"])
def template_operations(request: HttpRequest, template_id: int) -> JsonResponse:
    template = get_object_or_404(OperationTemplate, id=template_id)
    payload = _parse_json(request)
    machine_ids = payload.get("machine_ids")
    previous_id = payload.get("previous_id")
    try:
        if not isinstance(machine_ids, list) or not machine_ids:
            raise ValidationError("machine_ids must be a non-empty list")
        hold_mode = HoldMode.from_flag(_parse_hold(payload.get("hold")))
        if previous_id is not None:
            previous_id = int(previous_id)
        operation = OperationAdmitter(template).admit(
            request.user,
            [int(machine_id) for machine_id in machine_ids],
            previous_id=previous_id,
            hold_mode=hold_mode,
        )
    except (ValidationError, TypeError, ValueError) as exc:
        return JsonResponse({"error": "invalid request", "details": [str(exc)]}, status=400)
    except AdmissionError as exc:
        return _admission_error_response(exc)
    return JsonResponse(_operation_to_payload(operation, include_directives=True), status=201)


@csrf_exempt
@login_required
@require_http_methods(["POST"])
def template_operation_groups(request: HttpRequest, template_id: int) -> JsonResponse:
    template = get_object_or_404(OperationTemplate, id=template_id)
    payload = _parse_json(request)
    try:
        group_count = int(payload.get("group_count") or 0)
        hold_mode = HoldMode.from_flag(_parse_hold(payload.get("hold")) or False)
        operations: List[Operation] = GroupScheduler(template).schedule(
            request.user, group_count, hold_mode=hold_mode
        )
    except (ValidationError, TypeError, ValueError) as exc:
        return JsonResponse({"error": "invalid request", "details": [str(exc)]}, status=400)
    except AdmissionError as exc:
        return _admission_error_response(exc)
    return JsonResponse({"operations": [_operation_to_payload(operation) for operation in operations]}, status=201)


@login_required
@require_http_methods(["GET"])
def operation_detail(request: HttpRequest, operation_id: int) -> JsonResponse:
    operation = get_object_or_404(_operations_for(request.user), id=operation_id)
    return JsonResponse(_operation_to_payload(operation, include_directives=True))


@csrf_exempt
@login_required
@require_http_methods(["POST"])
def operation_event(request: HttpRequest, operation_id: int) -> JsonResponse:
    operation = get_object_or_404(_operations_for(request.user), id=operation_id)
    event = str(_parse_json(request).get("event") or "").strip()
    if event not in operation.available_events():
        return JsonResponse(
            {"error": f"event not available: {event}", "events": operation.available_events()}, status=409
        )
    operation.fire_event(event)
    logger.info("Operation %s event %s by %s", operation.id, event, request.user.get_username())
    return JsonResponse(_operation_to_payload(operation))
